"""
PayVAT - VAT Calculator Service

Net VAT calculation for Irish VAT returns.

Net VAT = Sales (output) VAT - Purchase (input) VAT
- Positive net VAT is payable to Revenue
- Negative net VAT is a refund due to the business

All arithmetic uses Decimal, rounded half-up to the cent.

Calculation strategy:
1. Remote calculation service (when VAT_CALCULATION_SERVICE_URL is set)
2. Local formula, used whenever the remote service is unavailable
"""

import calendar
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, List, Optional, Union

import httpx

from payvat.config import settings
from payvat.utils.error_handling import InvalidAmountException, InvalidTaxPeriodException

logger = logging.getLogger(__name__)


CENT = Decimal("0.01")
MIN_VAT_AMOUNT = Decimal("0.00")
MAX_VAT_AMOUNT = Decimal("10000000.00")  # EUR 10M sanity limit
DEFAULT_LARGE_REFUND_THRESHOLD = Decimal("10000.00")
DEFAULT_LARGE_LIABILITY_THRESHOLD = Decimal("50000.00")

# Irish VAT payments fall due on the 23rd of the month after the period
PAYMENT_DUE_DAY = 23
MIN_PERIOD_DAYS = 14
MAX_PERIOD_MONTHS = 3

AmountInput = Union[Decimal, int, float, str]


@dataclass(frozen=True)
class VATCalculation:
    """Result of a net VAT calculation."""
    sales_vat: Decimal
    purchase_vat: Decimal
    net_vat: Decimal
    warnings: List[str] = field(default_factory=list)
    source: str = "local"

    @property
    def is_refund(self) -> bool:
        return self.net_vat < 0

    def to_dict(self) -> dict:
        return {
            "sales_vat": str(self.sales_vat),
            "purchase_vat": str(self.purchase_vat),
            "net_vat": str(self.net_vat),
            "is_refund": self.is_refund,
            "warnings": list(self.warnings),
            "source": self.source,
        }


def round_currency(value: Decimal) -> Decimal:
    """Round half-up to the cent, normalising negative zero."""
    rounded = value.quantize(CENT, rounding=ROUND_HALF_UP)
    if rounded == 0:
        return Decimal("0.00")
    return rounded


def to_amount(value: AmountInput, field_name: str, maximum: Decimal = MAX_VAT_AMOUNT) -> Decimal:
    """Parse and validate a VAT amount. Raises InvalidAmountException."""
    if isinstance(value, bool):
        raise InvalidAmountException(value, field=field_name)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountException(value, field=field_name)

    if not amount.is_finite():
        raise InvalidAmountException(value, field=field_name)
    if amount < MIN_VAT_AMOUNT:
        raise InvalidAmountException(
            value,
            field=field_name,
            message=f"{field_name} cannot be negative",
        )
    if amount > maximum:
        raise InvalidAmountException(
            value,
            field=field_name,
            message=f"{field_name} amount too large (maximum €{maximum:,.2f})",
        )
    return amount


def calculate_net_vat(
    sales_vat: AmountInput,
    purchase_vat: AmountInput,
    large_refund_threshold: Decimal = DEFAULT_LARGE_REFUND_THRESHOLD,
    large_liability_threshold: Decimal = DEFAULT_LARGE_LIABILITY_THRESHOLD,
    max_amount: Decimal = MAX_VAT_AMOUNT,
) -> VATCalculation:
    """
    Calculate net VAT from sales and purchase VAT.

    Pure and deterministic: identical inputs always give an identical result.

    Args:
        sales_vat: Output VAT charged on sales (>= 0)
        purchase_vat: Input VAT paid on purchases (>= 0)
        large_refund_threshold: Warn when purchase VAT exceeds sales VAT by more than this
        large_liability_threshold: Warn when net VAT payable exceeds this
        max_amount: Upper sanity limit for either input

    Returns:
        VATCalculation whose net_vat is exactly the rounded sales_vat minus
        the rounded purchase_vat

    Raises:
        InvalidAmountException: negative, non-numeric or out-of-range input
    """
    sales = round_currency(to_amount(sales_vat, "sales_vat", max_amount))
    purchase = round_currency(to_amount(purchase_vat, "purchase_vat", max_amount))

    net_vat = round_currency(sales - purchase)

    warnings = []
    refund = purchase - sales
    if refund > large_refund_threshold:
        warnings.append(
            f"Purchase VAT exceeds Sales VAT by more than €{large_refund_threshold:,.2f} "
            "- please verify calculations"
        )
    if net_vat > large_liability_threshold:
        warnings.append("Large VAT amount - please verify calculations")

    return VATCalculation(
        sales_vat=sales,
        purchase_vat=purchase,
        net_vat=net_vat,
        warnings=warnings,
    )


# ===========================================
# PERIOD HELPERS
# ===========================================

def _add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_due_date(period_end: date) -> date:
    """
    Payment due date: the 23rd of the month following the period end,
    moved to the next Monday when it falls on a weekend.
    """
    first_of_next = _add_months(period_end.replace(day=1), 1)
    due = first_of_next.replace(day=PAYMENT_DUE_DAY)
    if due.weekday() == 5:  # Saturday
        due += timedelta(days=2)
    elif due.weekday() == 6:  # Sunday
        due += timedelta(days=1)
    return due


def is_overdue(due_date: date, today: Optional[date] = None) -> bool:
    today = today or date.today()
    return due_date < today


def validate_vat_period(period_start: date, period_end: date, today: Optional[date] = None) -> None:
    """
    Validate a VAT period.

    Raises:
        InvalidTaxPeriodException: end before start, future start,
            shorter than two weeks or longer than three months
    """
    today = today or date.today()
    details = {"period_start": period_start.isoformat(), "period_end": period_end.isoformat()}

    if period_end <= period_start:
        raise InvalidTaxPeriodException("Period end date must be after start date", details)
    if period_start > today:
        raise InvalidTaxPeriodException("Period cannot start in the future", details)
    if (period_end - period_start).days + 1 < MIN_PERIOD_DAYS:
        raise InvalidTaxPeriodException("VAT period must be at least 2 weeks", details)
    if period_end > _add_months(period_start, MAX_PERIOD_MONTHS):
        raise InvalidTaxPeriodException("VAT period cannot exceed 3 months", details)


def generate_vat_reference(period_end: date) -> str:
    """Submission reference, e.g. VAT-2026-03-9F2C41AB."""
    return f"VAT-{period_end.year}-{period_end.month:02d}-{secrets.token_hex(4).upper()}"


# ===========================================
# CALCULATION STRATEGY
# ===========================================

class RemoteCalculationUnavailable(Exception):
    """The remote calculator failed; the caller must use the local formula."""


class RemoteVATCalculator:
    """
    Client for an external VAT calculation service.

    POST {url} {"sales_vat": "...", "purchase_vat": "..."}
    -> {"net_vat": "...", "warnings": [...]}
    """

    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    async def calculate(self, sales_vat: Decimal, purchase_vat: Decimal) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.url,
                    json={"sales_vat": str(sales_vat), "purchase_vat": str(purchase_vat)},
                )
        except httpx.TimeoutException as e:
            raise RemoteCalculationUnavailable("Remote VAT calculation timed out") from e
        except httpx.RequestError as e:
            raise RemoteCalculationUnavailable(f"Remote VAT calculation request failed: {e}") from e

        if response.status_code >= 400:
            raise RemoteCalculationUnavailable(f"Remote VAT calculation returned HTTP {response.status_code}")

        try:
            body: Any = response.json()
        except ValueError as e:
            raise RemoteCalculationUnavailable("Remote VAT calculation returned invalid JSON") from e
        if not isinstance(body, dict) or "net_vat" not in body:
            raise RemoteCalculationUnavailable("Remote VAT calculation response missing net_vat")
        return body


class VATCalculationService:
    """
    Two-step calculation: remote service first, local formula on failure.

    The fallback is triggered by RemoteCalculationUnavailable (timeout,
    transport error, HTTP error, malformed body, or a net figure that does
    not match sales - purchase). Input validation errors are never retried
    remotely or locally; they propagate to the caller.
    """

    def __init__(self, remote: Optional[RemoteVATCalculator] = None):
        if remote is None and settings.vat_calculation_service_url:
            remote = RemoteVATCalculator(
                settings.vat_calculation_service_url,
                timeout=settings.vat_calculation_timeout_seconds,
            )
        self.remote = remote

    def calculate_locally(self, sales_vat: AmountInput, purchase_vat: AmountInput) -> VATCalculation:
        return calculate_net_vat(
            sales_vat,
            purchase_vat,
            large_refund_threshold=settings.vat_large_refund_threshold,
            large_liability_threshold=settings.vat_large_liability_threshold,
            max_amount=settings.vat_max_amount,
        )

    async def calculate(self, sales_vat: AmountInput, purchase_vat: AmountInput) -> VATCalculation:
        local = self.calculate_locally(sales_vat, purchase_vat)
        if self.remote is None:
            return local

        try:
            body = await self.remote.calculate(local.sales_vat, local.purchase_vat)
            remote_net = round_currency(Decimal(str(body["net_vat"])))
        except RemoteCalculationUnavailable as e:
            logger.warning(f"Remote VAT calculation unavailable, using local formula: {e}")
            return local
        except (InvalidOperation, ValueError, TypeError):
            logger.warning("Remote VAT calculation returned a non-numeric net_vat, using local formula")
            return local

        if remote_net != local.net_vat:
            logger.warning(
                f"Remote VAT calculation disagrees with local formula "
                f"(remote={remote_net}, local={local.net_vat}), using local formula"
            )
            return local

        remote_warnings = body.get("warnings") or []
        warnings = list(local.warnings)
        warnings.extend(w for w in remote_warnings if isinstance(w, str) and w not in warnings)

        return VATCalculation(
            sales_vat=local.sales_vat,
            purchase_vat=local.purchase_vat,
            net_vat=local.net_vat,
            warnings=warnings,
            source="remote",
        )
