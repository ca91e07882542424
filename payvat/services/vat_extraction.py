"""
PayVAT - VAT Extraction

Finds VAT amounts in the OCR text of uploaded documents. The extracted
amounts feed the extracted-VAT summary (see vat_aggregator).
"""

import json
import math
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from payvat.config import settings
from payvat.models.document import Document
from payvat.services.vat_calculator import round_currency

logger = logging.getLogger(__name__)


EXTRACTION_PROMPT = """You are reading an Irish business document ({document_type}, filed as {category}).
List every VAT amount charged or paid in the document, in euro.
Do not include net amounts, gross totals or VAT rates.

Respond with valid JSON:
{{
    "vat_amounts": [12.34, 5.00],
    "confidence": 0.0 to 1.0,
    "summary": "one sentence describing what was found"
}}

Document text:
{text}"""

# Text beyond this is not sent to the model
MAX_TEXT_CHARS = 12000


@dataclass
class ExtractionResult:
    """VAT amounts found in one document."""
    amounts: List[Decimal] = field(default_factory=list)
    confidence: float = 0.0
    summary: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return round_currency(sum(self.amounts, Decimal("0")))


class VATExtractor(ABC):
    """Extracts VAT amounts from a document."""

    @abstractmethod
    async def extract_vat(self, document: Document) -> ExtractionResult:
        pass


def _parse_amounts(values: Any) -> List[Decimal]:
    amounts = []
    for value in values or []:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            continue
        if amount.is_finite() and amount >= 0:
            amounts.append(round_currency(amount))
    return amounts


def parse_extraction_reply(raw: str) -> ExtractionResult:
    if "```json" in raw:
        raw = raw.split("```json")[1].split("```")[0]
    elif "```" in raw:
        raw = raw.split("```")[1].split("```")[0]

    try:
        data = json.loads(raw.strip())
    except ValueError:
        logger.warning("VAT extraction reply was not valid JSON")
        return ExtractionResult(summary="Could not read extraction result")

    if not isinstance(data, dict):
        return ExtractionResult(summary="Could not read extraction result")

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    if not math.isfinite(confidence):
        confidence = 0.0

    return ExtractionResult(
        amounts=_parse_amounts(data.get("vat_amounts")),
        confidence=min(max(confidence, 0.0), 1.0),
        summary=data.get("summary"),
    )


class OpenAIVATExtractor(VATExtractor):
    """Extracts VAT amounts with an OpenAI chat completion."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, client: Any = None):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self._client = client

    def _get_client(self):
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                timeout=settings.openai_timeout_seconds,
            )
        return self._client

    async def extract_vat(self, document: Document) -> ExtractionResult:
        text = (document.raw_text or "").strip()
        if not text:
            return ExtractionResult(summary="No text found in document")

        prompt = EXTRACTION_PROMPT.format(
            document_type=document.document_type.value,
            category=document.category.value,
            text=text[:MAX_TEXT_CHARS],
        )

        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You extract VAT figures from documents. Always respond with valid JSON."},
                {"role": "user", "content": prompt},
            ],
            temperature=0.1,
            max_tokens=400,
        )

        result = parse_extraction_reply(response.choices[0].message.content or "")
        logger.info(
            f"Extracted {len(result.amounts)} VAT amount(s) from document {document.id} "
            f"(confidence {result.confidence:.2f})"
        )
        return result
