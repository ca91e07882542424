"""
PayVAT - Payment Processor

Processor interface used by the payment lifecycle, and its Stripe
implementation (PaymentIntents API over httpx).

Webhook payloads are verified and parsed here, once, into typed events.
Business logic never sees raw processor JSON.

Stripe API docs: https://stripe.com/docs/api/payment_intents
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union

import httpx

from payvat.models.payment import PaymentStatus
from payvat.utils.error_handling import InvalidInputException, ProcessorException, SignatureInvalidException

logger = logging.getLogger(__name__)


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class PaymentIntentResult:
    """Processor view of a payment intent."""
    id: str
    status: str
    client_secret: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    last_error: Optional[str] = None
    last_error_code: Optional[str] = None
    payment_method_types: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def payment_method(self) -> Optional[str]:
        return self.payment_method_types[0] if self.payment_method_types else None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "PaymentIntentResult":
        last_error = data.get("last_payment_error") or {}
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            client_secret=data.get("client_secret"),
            amount_cents=data.get("amount"),
            currency=data.get("currency"),
            last_error=last_error.get("message"),
            last_error_code=last_error.get("code") or last_error.get("decline_code"),
            payment_method_types=list(data.get("payment_method_types") or []),
            metadata=dict(data.get("metadata") or {}),
        )


# Processor status -> local status
PROCESSOR_STATUS_MAP: Dict[str, PaymentStatus] = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "canceled": PaymentStatus.CANCELLED,
    "succeeded": PaymentStatus.COMPLETED,
}


def map_processor_status(intent: PaymentIntentResult) -> PaymentStatus:
    """
    Map a processor status to the local enum.

    An intent that is back at requires_payment_method after a declined
    attempt is reported as FAILED; unknown statuses are FAILED as well.
    """
    if intent.status == "requires_payment_method" and intent.last_error:
        return PaymentStatus.FAILED
    return PROCESSOR_STATUS_MAP.get(intent.status, PaymentStatus.FAILED)


def to_minor_units(amount: Decimal) -> int:
    """EUR -> cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# =============================================================================
# WEBHOOK EVENTS
# =============================================================================

@dataclass(frozen=True)
class PaymentIntentSucceeded:
    event_id: str
    intent: PaymentIntentResult
    type: str = "payment_intent.succeeded"


@dataclass(frozen=True)
class PaymentIntentFailed:
    event_id: str
    intent: PaymentIntentResult
    type: str = "payment_intent.payment_failed"


@dataclass(frozen=True)
class PaymentIntentCanceled:
    event_id: str
    intent: PaymentIntentResult
    type: str = "payment_intent.canceled"


@dataclass(frozen=True)
class PaymentIntentRequiresAction:
    event_id: str
    intent: PaymentIntentResult
    type: str = "payment_intent.requires_action"


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    type: str


PaymentIntentEvent = Union[
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    PaymentIntentCanceled,
    PaymentIntentRequiresAction,
]
WebhookEvent = Union[PaymentIntentEvent, UnhandledEvent]

_EVENT_TYPES = {
    "payment_intent.succeeded": PaymentIntentSucceeded,
    "payment_intent.payment_failed": PaymentIntentFailed,
    "payment_intent.canceled": PaymentIntentCanceled,
    "payment_intent.requires_action": PaymentIntentRequiresAction,
}

# Local status each event reports
EVENT_STATUS: Dict[type, PaymentStatus] = {
    PaymentIntentSucceeded: PaymentStatus.COMPLETED,
    PaymentIntentFailed: PaymentStatus.FAILED,
    PaymentIntentCanceled: PaymentStatus.CANCELLED,
    PaymentIntentRequiresAction: PaymentStatus.PROCESSING,
}


def parse_webhook_event(payload: bytes) -> WebhookEvent:
    """Parse a verified webhook body into a typed event."""
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidInputException("Webhook payload is not valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidInputException("Webhook payload is not a JSON object")

    event_id = str(body.get("id", ""))
    event_type = str(body.get("type", ""))
    event_cls = _EVENT_TYPES.get(event_type)
    if event_cls is None:
        return UnhandledEvent(event_id=event_id, type=event_type)

    obj = (body.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict) or not obj.get("id"):
        logger.warning(f"Webhook {event_id} ({event_type}) has no payment intent object")
        return UnhandledEvent(event_id=event_id, type=event_type)

    return event_cls(event_id=event_id, intent=PaymentIntentResult.from_api(obj))


def verify_stripe_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> bool:
    """
    Verify a Stripe-Signature header.

    Header format: t=<unix timestamp>,v1=<hex hmac>[,v1=...]
    Signed payload: "<timestamp>.<raw body>" with HMAC-SHA256.

    Returns False for a missing secret or header, a malformed header, an
    expired timestamp or a signature mismatch.
    """
    if not secret or not signature_header:
        return False

    timestamp = None
    signatures = []
    for item in signature_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)

    if not timestamp or not signatures:
        return False
    try:
        timestamp_value = int(timestamp)
    except ValueError:
        return False

    current = now if now is not None else time.time()
    if tolerance_seconds and abs(current - timestamp_value) > tolerance_seconds:
        return False

    signed_payload = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()

    # Constant-time comparison against every v1 signature
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


# =============================================================================
# ABSTRACT PAYMENT PROCESSOR
# =============================================================================

class PaymentProcessor(ABC):
    """Abstract base class for payment processors."""

    @abstractmethod
    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        """Create a payment intent. Raises ProcessorException."""
        pass

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        """Fetch the current state of a payment intent. Raises ProcessorException."""
        pass

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        """Verify and parse a webhook. Raises SignatureInvalidException."""
        pass


# =============================================================================
# STRIPE PROCESSOR
# =============================================================================

class StripeProvider(PaymentProcessor):
    """
    Stripe payment processor for EUR VAT payments.

    - Real API calls via httpx, form encoded as Stripe expects
    - Amounts sent in cents
    - Every call bounded by a timeout
    - Webhook verification fails closed when no secret is configured
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        webhook_tolerance_seconds: Optional[int] = None,
    ):
        from payvat.config import settings

        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.base_url = (base_url or settings.stripe_api_base_url).rstrip("/")
        self.timeout = timeout or settings.stripe_timeout_seconds
        self.webhook_tolerance_seconds = (
            webhook_tolerance_seconds
            if webhook_tolerance_seconds is not None
            else settings.stripe_webhook_tolerance_seconds
        )

        if not self.secret_key:
            logger.warning("StripeProvider initialized without secret key - API calls will fail")

    def _get_headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        """Get headers for Stripe API requests."""
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request to the Stripe API.

        Raises:
            ProcessorException: On API errors, timeouts and network errors
        """
        if not self.secret_key:
            raise ProcessorException("Payment processor is not configured", processor_code="not_configured")

        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(idempotency_key),
                    data=data,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Stripe API timeout: {method} {endpoint}")
            raise ProcessorException(
                "Payment processor timed out. Please try again.",
                processor_code="timeout",
                original_error=e,
            )
        except httpx.RequestError as e:
            logger.error(f"Stripe API request error: {e}")
            raise ProcessorException(
                "Could not reach the payment processor. Please try again.",
                processor_code="network_error",
                original_error=e,
            )

        try:
            result = response.json()
        except ValueError:
            result = {}

        logger.debug(f"Stripe {method} {endpoint}: status={response.status_code}")

        if response.status_code >= 400:
            error = result.get("error") or {}
            message = error.get("message") or f"Payment processor error (HTTP {response.status_code})"
            code = error.get("code") or error.get("type") or f"http_{response.status_code}"
            logger.error(f"Stripe API error: {code} - {message}")
            raise ProcessorException(message, processor_code=code)

        if not result.get("id"):
            raise ProcessorException("Payment processor returned an unexpected response", processor_code="bad_response")

        return result

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        """
        Create a PaymentIntent.

        API: POST https://api.stripe.com/v1/payment_intents
        """
        payload: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        if description:
            payload["description"] = description
        for key, value in (metadata or {}).items():
            payload[f"metadata[{key}]"] = value

        logger.info(f"Creating Stripe payment intent: amount=€{amount:,.2f}")

        result = await self._make_request(
            "POST",
            "/payment_intents",
            data=payload,
            idempotency_key=idempotency_key,
        )
        intent = PaymentIntentResult.from_api(result)

        logger.info(f"Payment intent created: {intent.id} status={intent.status}")
        return intent

    async def retrieve_intent(self, intent_id: str) -> PaymentIntentResult:
        """
        Retrieve a PaymentIntent.

        API: GET https://api.stripe.com/v1/payment_intents/:id
        """
        result = await self._make_request("GET", f"/payment_intents/{intent_id}")
        return PaymentIntentResult.from_api(result)

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureInvalidException("Webhook signing secret not configured")

        if not verify_stripe_signature(
            payload,
            signature_header,
            self.webhook_secret,
            tolerance_seconds=self.webhook_tolerance_seconds,
        ):
            logger.warning("Stripe webhook signature verification failed")
            raise SignatureInvalidException()

        return parse_webhook_event(payload)
