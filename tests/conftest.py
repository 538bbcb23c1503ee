from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.core.auth.jwt import create_access_token
from src.core.auth.models import UserRole
from src.core.database import get_db
from src.core.database.base import Base
from src.core.exceptions import GatewayError
from src.core.dependencies import get_gateway, get_notifier
from src.integrations.paypal.client import CaptureResult, CreatedOrder
from src.main import app
from src.modules.courses.models import Course
from src.modules.courses.service import SqlCatalogAccess
from src.modules.enrollments.router import get_session_factory
from src.modules.vouchers.models import Voucher

# In-memory SQLite shared by every session of a test through one connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_ID = 1
STUDENT_ID = 100
OTHER_STUDENT_ID = 200


class FakeNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[int, str, str]] = []

    async def notify(self, user_id: int, title: str, message: str) -> None:
        self.sent.append((user_id, title, message))

    def titles_for(self, user_id: int) -> list[str]:
        return [title for uid, title, _ in self.sent if uid == user_id]


class FailingNotifier:
    async def notify(self, user_id: int, title: str, message: str) -> None:
        raise RuntimeError("mail relay down")


class RecordingAccess(SqlCatalogAccess):
    """Catalog access that also records every grant/revoke call."""

    def __init__(self, db: AsyncSession, calls: list | None = None):
        super().__init__(db)
        self.calls = calls if calls is not None else []

    async def grant(self, student_id: int, course_id: int) -> None:
        self.calls.append(("grant", student_id, course_id))
        await super().grant(student_id, course_id)

    async def revoke(self, student_id: int, course_id: int) -> None:
        self.calls.append(("revoke", student_id, course_id))
        await super().revoke(student_id, course_id)


class FakeGateway:
    """In-memory card gateway."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.captured: list[str] = []
        self.fail_capture = False

    async def create_order(self, amount, currency, reference, description=None) -> CreatedOrder:
        order_id = f"ORDER-{len(self.orders) + 1}"
        self.orders[order_id] = {"amount": amount, "currency": currency, "status": "CREATED"}
        return CreatedOrder(
            order_id=order_id,
            status="CREATED",
            approval_url=f"https://paypal.test/checkout?token={order_id}",
        )

    async def capture(self, order_id: str) -> CaptureResult:
        if self.fail_capture:
            raise GatewayError("Card gateway is unavailable")
        self.captured.append(order_id)
        self.orders[order_id]["status"] = "COMPLETED"
        return CaptureResult(payer_id="PAYER-1", payment_id=f"CAPTURE-{order_id}", status="COMPLETED")

    async def get_order_status(self, order_id: str) -> str:
        return self.orders[order_id]["status"]


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture(autouse=True)
async def setup_database(engine):
    """Create tables before each test and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Get test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def client(
    db_session: AsyncSession,
    session_factory,
    notifier: FakeNotifier,
    gateway: FakeGateway,
) -> AsyncGenerator[AsyncClient, None]:
    """Get test HTTP client with overridden database and collaborator dependencies."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def make_course(db_session: AsyncSession):
    async def _make(title: str = "Python Basics", price: str = "100.00", is_active: bool = True) -> Course:
        course = Course(title=title, price=Decimal(price), is_active=is_active)
        db_session.add(course)
        await db_session.flush()
        return course

    return _make


@pytest.fixture
async def course(make_course) -> Course:
    return await make_course()


def auth_headers(user_id: int, role: UserRole) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id, role.value)}"}


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return auth_headers(ADMIN_ID, UserRole.ADMIN)


@pytest.fixture
def student_headers() -> dict[str, str]:
    return auth_headers(STUDENT_ID, UserRole.STUDENT)


@pytest.fixture
def make_voucher(db_session: AsyncSession):
    async def _make(
        courses: list[Course],
        code: str = "SAVE10",
        percentage: str = "10",
        usage_limit: int = 10,
        used_count: int = 0,
        is_active: bool = True,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
    ) -> Voucher:
        now = datetime.now(timezone.utc)
        voucher = Voucher(
            code=code,
            discount_percentage=Decimal(percentage),
            usage_limit=usage_limit,
            used_count=used_count,
            valid_from=valid_from or now - timedelta(days=1),
            valid_until=valid_until or now + timedelta(days=30),
            is_active=is_active,
            created_by_id=ADMIN_ID,
        )
        voucher.courses = list(courses)
        db_session.add(voucher)
        await db_session.flush()
        return voucher

    return _make


@pytest.fixture
def other_student_headers() -> dict[str, str]:
    return auth_headers(OTHER_STUDENT_ID, UserRole.STUDENT)


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def access_calls() -> list:
    return []


@pytest.fixture
def recording_access(db_session: AsyncSession, access_calls: list) -> RecordingAccess:
    return RecordingAccess(db_session, access_calls)


@pytest.fixture
def recording_access_factory(access_calls: list):
    """Access factory for code that opens its own sessions (the expiration sweep)."""
    return lambda session: RecordingAccess(session, access_calls)
