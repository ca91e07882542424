"""
PayVAT - Irish VAT compliance API

VAT calculation, return submission, Stripe payment collection and support chat.
"""

__version__ = "0.1.0"
