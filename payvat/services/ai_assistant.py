"""
PayVAT - AI Chat Assistant

Uses OpenAI chat completions to answer VAT support questions and to decide
whether a conversation needs a human.

The model is asked for a JSON reply:
    {"response": "...", "requires_human_support": bool, "escalation_reason": "..."}
A reply that is not valid JSON is used as plain text and checked against
escalation keywords instead.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payvat.config import settings
from payvat.models.user import User
from payvat.models.vat_return import VATReturn

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = """You are the PayVAT support assistant for Irish businesses filing VAT returns.
Answer questions about Irish VAT, VAT3 returns, deadlines, payments and using PayVAT.
Be concise and accurate. Never invent figures; use only the business context provided.
If the user has a complaint, a billing or legal problem, an urgent issue, asks for a refund
or asks to speak to a person, set requires_human_support to true.

Always respond with valid JSON:
{
    "response": "your reply to the user",
    "requires_human_support": true/false,
    "escalation_reason": "short reason or null"
}"""

ESCALATION_KEYWORDS = (
    "complaint",
    "billing",
    "legal",
    "urgent",
    "refund",
    "speak to a human",
    "speak to human",
    "speak to someone",
    "speak to manager",
    "speak to a manager",
)

DEFAULT_ESCALATION_REASON = "Keywords suggest human support needed"


@dataclass
class VATContext:
    """Latest VAT figures shown to the assistant."""
    sales_vat: Decimal
    purchase_vat: Decimal
    net_vat: Decimal
    period: Optional[str] = None
    status: Optional[str] = None


@dataclass
class UserContext:
    """What the assistant knows about the person it is talking to."""
    user_id: Optional[str] = None
    business_name: Optional[str] = None
    vat_number: Optional[str] = None
    current_vat: Optional[VATContext] = None

    def to_prompt(self) -> str:
        if not self.user_id:
            return ""
        parts = []
        if self.business_name:
            parts.append(f"Business: {self.business_name}")
        if self.vat_number:
            parts.append(f"VAT Number: {self.vat_number}")
        if self.current_vat:
            vat = self.current_vat
            parts.append(
                f"Current VAT return ({vat.period or 'current period'}, {vat.status or 'DRAFT'}): "
                f"Sales VAT €{vat.sales_vat:,.2f}, Purchase VAT €{vat.purchase_vat:,.2f}, "
                f"Net VAT €{vat.net_vat:,.2f}"
            )
        if not parts:
            return ""
        return "Business context:\n" + "\n".join(f"- {p}" for p in parts)


@dataclass
class ChatAIResponse:
    """Result of generate_chat_response."""
    success: bool
    response: Optional[str] = None
    requires_human_support: bool = False
    escalation_reason: Optional[str] = None
    error: Optional[str] = None
    suggested_actions: List[str] = field(default_factory=list)


def check_escalation_keywords(message: str) -> bool:
    text = message.lower()
    return any(keyword in text for keyword in ESCALATION_KEYWORDS)


def suggest_actions(message: str) -> List[str]:
    """Shortcuts offered next to the AI reply."""
    text = message.lower()
    actions = []
    if "calculate" in text or "vat" in text:
        actions.append("Calculate VAT return")
    if "upload" in text or "document" in text:
        actions.append("Upload VAT documents")
    if "pay" in text:
        actions.append("Make VAT payment")
    if "deadline" in text or "due" in text:
        actions.append("View VAT deadlines")
    return actions


def _strip_code_fence(text: str) -> str:
    if "```json" in text:
        return text.split("```json")[1].split("```")[0]
    if "```" in text:
        return text.split("```")[1].split("```")[0]
    return text


def parse_ai_reply(raw: str, message: str) -> ChatAIResponse:
    """
    Parse the model output once.

    JSON replies are trusted for the escalation decision. Anything else is
    treated as the reply text and escalated on keywords in the user's
    message.
    """
    try:
        data = json.loads(_strip_code_fence(raw).strip())
    except ValueError:
        data = None

    if isinstance(data, dict) and isinstance(data.get("response"), str) and data["response"].strip():
        escalate = bool(data.get("requires_human_support", False))
        reason = data.get("escalation_reason") or None
        if escalate and not reason:
            reason = "Human support requested"
        return ChatAIResponse(
            success=True,
            response=data["response"].strip(),
            requires_human_support=escalate,
            escalation_reason=reason if escalate else None,
            suggested_actions=suggest_actions(message),
        )

    escalate = check_escalation_keywords(message)
    return ChatAIResponse(
        success=True,
        response=raw.strip(),
        requires_human_support=escalate,
        escalation_reason=DEFAULT_ESCALATION_REASON if escalate else None,
        suggested_actions=suggest_actions(message),
    )


class AIAssistant:
    """
    OpenAI-backed chat assistant.

    Usage:
        assistant = AIAssistant()
        if assistant.is_enabled():
            reply = await assistant.generate_chat_response(text, context, history)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        enabled: Optional[bool] = None,
        client: Any = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.timeout = timeout or settings.openai_timeout_seconds
        self.enabled = settings.ai_chat_enabled if enabled is None else enabled
        self._client = client

    def is_enabled(self) -> bool:
        return bool(self.enabled and (self.api_key or self._client is not None))

    def _get_client(self):
        if self._client is None:
            import openai

            self._client = openai.AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def _complete(self, messages: List[Dict[str, str]], temperature: float, max_tokens: int) -> str:
        client = self._get_client()
        response = await client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError("Empty response from AI assistant")
        return content

    async def generate_chat_response(
        self,
        message: str,
        context: Optional[UserContext] = None,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> ChatAIResponse:
        """
        Answer a chat message.

        history is a list of {"role": "user" | "assistant", "content": ...}
        in ascending order. Errors are returned, not raised.
        """
        if not self.is_enabled():
            return ChatAIResponse(success=False, error="AI chat is not configured")

        system_prompt = SYSTEM_PROMPT
        context_prompt = context.to_prompt() if context else ""
        if context_prompt:
            system_prompt = f"{SYSTEM_PROMPT}\n\n{context_prompt}"

        messages = [{"role": "system", "content": system_prompt}]
        for entry in (history or [])[-settings.chat_ai_history_limit:]:
            messages.append({"role": entry["role"], "content": entry["content"]})
        messages.append({"role": "user", "content": message})

        try:
            raw = await self._complete(messages, temperature=0.3, max_tokens=600)
        except Exception as e:
            logger.error(f"AI chat response failed: {e}")
            return ChatAIResponse(success=False, error=str(e))

        return parse_ai_reply(raw, message)

    async def generate_welcome_message(self, context: Optional[UserContext] = None) -> Optional[str]:
        """Personalised greeting, or None when AI is unavailable."""
        if not self.is_enabled():
            return None

        prompt = (
            "Write a short, friendly one or two sentence greeting for a PayVAT support chat. "
            "Mention the business name if known and offer help with their VAT return. "
            "Reply with the greeting text only."
        )
        context_prompt = context.to_prompt() if context else ""
        if context_prompt:
            prompt = f"{prompt}\n\n{context_prompt}"

        try:
            text = await self._complete(
                [{"role": "user", "content": prompt}],
                temperature=0.5,
                max_tokens=120,
            )
        except Exception as e:
            logger.warning(f"AI welcome message failed: {e}")
            return None
        return text.strip() or None


async def build_user_context(db: AsyncSession, user: Optional[User]) -> UserContext:
    """Business details and the latest VAT return figures for user."""
    if user is None:
        return UserContext()

    result = await db.execute(
        select(VATReturn)
        .where(VATReturn.user_id == user.id)
        .order_by(VATReturn.period_end.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()

    current_vat = None
    if latest is not None:
        current_vat = VATContext(
            sales_vat=latest.sales_vat,
            purchase_vat=latest.purchase_vat,
            net_vat=latest.net_vat,
            period=latest.period_label,
            status=latest.status.value,
        )

    return UserContext(
        user_id=str(user.id),
        business_name=user.business_name,
        vat_number=user.vat_number,
        current_vat=current_vat,
    )
