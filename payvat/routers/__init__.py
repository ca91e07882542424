"""
PayVAT - API Routers
"""

from payvat.routers import chat, documents, payments, vat

__all__ = ["chat", "documents", "payments", "vat"]
