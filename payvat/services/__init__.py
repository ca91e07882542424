"""
PayVAT - Services Package

Business logic services.
"""

from payvat.services.audit_service import AuditService
from payvat.services.vat_calculator import VATCalculation, VATCalculationService, calculate_net_vat
from payvat.services.rate_limiter import ChatRateLimiter, RateLimitResult, get_chat_rate_limiter
from payvat.services.vat_aggregator import ExtractedVATSummary, aggregate, extracted_vat_cache
from payvat.services.vat_extraction import OpenAIVATExtractor, VATExtractor
from payvat.services.payment_provider import PaymentProcessor, StripeProvider
from payvat.services.payment_service import PaymentService
from payvat.services.ai_assistant import AIAssistant
from payvat.services.chat_service import ChatService
from payvat.services.vat_return_service import VATReturnService
from payvat.services.document_service import DocumentService

__all__ = [
    "AuditService",
    "VATCalculation",
    "VATCalculationService",
    "calculate_net_vat",
    "ChatRateLimiter",
    "RateLimitResult",
    "get_chat_rate_limiter",
    "ExtractedVATSummary",
    "aggregate",
    "extracted_vat_cache",
    "OpenAIVATExtractor",
    "VATExtractor",
    "PaymentProcessor",
    "StripeProvider",
    "PaymentService",
    "AIAssistant",
    "ChatService",
    "VATReturnService",
    "DocumentService",
]
