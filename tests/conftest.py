"""
PayVAT - Test Configuration

Pytest fixtures and configuration.
"""

import os

# Settings are read at import time; configure them before importing payvat
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET_KEY"] = "payvat-test-secret-key"
os.environ["DATABASE_URL_ASYNC"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["OPENAI_API_KEY"] = ""
os.environ["VAT_CALCULATION_SERVICE_URL"] = ""

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payvat.database import Base, get_async_session
from payvat.dependencies import (
    get_chat_assistant,
    get_payment_processor,
    get_rate_limiter,
    get_vat_extractor,
)
from payvat.models import Document, DocumentCategory, DocumentType, User, VATReturn, VATReturnStatus
from payvat.services.ai_assistant import AIAssistant, ChatAIResponse, UserContext
from payvat.services.payment_provider import StripeProvider
from payvat.services.rate_limiter import ChatRateLimiter
from payvat.services.vat_aggregator import extracted_vat_cache
from payvat.services.vat_extraction import ExtractionResult, VATExtractor
from payvat.utils.security import create_access_token
from main import app

from fixtures.stripe_mock import MockStripeServer


TEST_DATABASE_URL = "sqlite+aiosqlite://"


# ===========================================
# TEST DOUBLES
# ===========================================

class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAssistant(AIAssistant):
    """AI assistant with scripted replies."""

    def __init__(self, enabled: bool = True):
        super().__init__(api_key="test", enabled=enabled)
        self.reply: ChatAIResponse = ChatAIResponse(
            success=True,
            response="Your VAT3 return is due by the 23rd of the month after the period ends.",
        )
        self.welcome: Optional[str] = None
        self.error: Optional[Exception] = None
        self.calls: List[Dict] = []

    async def generate_chat_response(self, message, context=None, history=None) -> ChatAIResponse:
        self.calls.append({"message": message, "context": context, "history": list(history or [])})
        if self.error is not None:
            raise self.error
        return self.reply

    async def generate_welcome_message(self, context: Optional[UserContext] = None) -> Optional[str]:
        if self.error is not None:
            raise self.error
        return self.welcome


class FakeExtractor(VATExtractor):
    """Returns a fixed extraction result."""

    def __init__(self, amounts=None, confidence: float = 0.9):
        self.result = ExtractionResult(
            amounts=[Decimal(a) for a in (amounts or ["23.00", "11.50"])],
            confidence=confidence,
            summary="VAT lines found",
        )
        self.calls = 0

    async def extract_vat(self, document) -> ExtractionResult:
        self.calls += 1
        return self.result


# ===========================================
# DATABASE
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def clear_extracted_vat_cache():
    extracted_vat_cache.clear()
    yield
    extracted_vat_cache.clear()


# ===========================================
# COLLABORATORS
# ===========================================

@pytest.fixture
def stripe() -> MockStripeServer:
    """Mock Stripe API, active for the duration of the test."""
    server = MockStripeServer()
    with server.activate():
        yield server


@pytest.fixture
def processor(stripe: MockStripeServer) -> StripeProvider:
    return StripeProvider(
        secret_key="sk_test_payvat",
        webhook_secret=stripe.webhook_secret,
        base_url=MockStripeServer.BASE_URL,
        timeout=5,
    )


@pytest.fixture
def assistant() -> FakeAssistant:
    return FakeAssistant()


@pytest.fixture
def extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock: FakeClock) -> ChatRateLimiter:
    return ChatRateLimiter(max_messages=3, window_seconds=60, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    processor: StripeProvider,
    assistant: FakeAssistant,
    extractor: FakeExtractor,
    rate_limiter: ChatRateLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session and collaborator overrides."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_chat_assistant] = lambda: assistant
    app.dependency_overrides[get_vat_extractor] = lambda: extractor
    app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

async def create_user(db_session: AsyncSession, email: str = "owner@murphybakery.ie", **kwargs) -> User:
    values = dict(
        id=uuid4(),
        email=email,
        first_name="Aoife",
        last_name="Murphy",
        business_name="Murphy's Bakery Ltd",
        vat_number="IE1234567T",
        is_active=True,
    )
    values.update(kwargs)
    user = User(**values)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def create_vat_return(
    db_session: AsyncSession,
    user: User,
    sales_vat: str = "1500.00",
    purchase_vat: str = "250.00",
    status: VATReturnStatus = VATReturnStatus.SUBMITTED,
    period_start: date = date(2025, 1, 1),
    period_end: date = date(2025, 2, 28),
) -> VATReturn:
    sales, purchases = Decimal(sales_vat), Decimal(purchase_vat)
    vat_return = VATReturn(
        id=uuid4(),
        user_id=user.id,
        period_start=period_start,
        period_end=period_end,
        due_date=date(2025, 3, 24),
        sales_vat=sales,
        purchase_vat=purchases,
        net_vat=sales - purchases,
        status=status,
        revenue_ref_number=f"VAT-2025-02-{uuid4().hex[:8].upper()}" if status != VATReturnStatus.DRAFT else None,
    )
    db_session.add(vat_return)
    await db_session.commit()
    await db_session.refresh(vat_return)
    return vat_return


async def create_document(
    db_session: AsyncSession,
    user: User,
    category: DocumentCategory = DocumentCategory.SALES,
    amounts: Optional[List[str]] = None,
    confidence: Optional[float] = 0.9,
    is_scanned: bool = True,
    vat_return: Optional[VATReturn] = None,
    name: str = "invoice.pdf",
) -> Document:
    document = Document(
        id=uuid4(),
        user_id=user.id,
        vat_return_id=vat_return.id if vat_return else None,
        original_name=name,
        file_size=2048,
        mime_type="application/pdf",
        category=category,
        document_type=DocumentType.SALES_INVOICE if category == DocumentCategory.SALES else DocumentType.PURCHASE_INVOICE,
        is_scanned=is_scanned,
        extracted_amounts=amounts,
        extraction_confidence=confidence if is_scanned else None,
        raw_text="Invoice 42\nVAT @ 23%: 23.00",
    )
    db_session.add(document)
    await db_session.commit()
    await db_session.refresh(document)
    return document


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    return await create_user(db_session)


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    return await create_user(
        db_session,
        email="accounts@oconnorjoinery.ie",
        first_name="Ciaran",
        last_name="O'Connor",
        business_name="O'Connor Joinery",
        vat_number="IE7654321W",
    )


@pytest_asyncio.fixture
async def submitted_return(db_session: AsyncSession, test_user: User) -> VATReturn:
    """SUBMITTED return with net VAT of 1250.00."""
    return await create_vat_return(db_session, test_user)


@pytest.fixture
def auth_headers(test_user: User) -> Dict[str, str]:
    """Create authentication headers for test user."""
    token = create_access_token({"sub": str(test_user.id)})
    return {"Authorization": f"Bearer {token}"}
