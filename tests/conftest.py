import hashlib
import hmac
import os
from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional
from uuid import UUID, uuid4

# Settings are read at import time; give the app a harmless environment first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_platform_secret")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from schoolpay.auth.security import create_access_token  # noqa: E402
from schoolpay.core.config import settings  # noqa: E402
from schoolpay.core.enums import PLAN_NAMES, PlanType, SubscriptionStatus  # noqa: E402
from schoolpay.core.exceptions import GatewayUnavailable  # noqa: E402
from schoolpay.core.gateway_client import (  # noqa: E402
    GatewayInitialization,
    GatewayVerification,
    PaystackClient,
    get_gateway_client,
)
from schoolpay.core.models import Student, StudentFee, SubscriptionPlan, Tenant  # noqa: E402
from schoolpay.db.session import Base, get_db  # noqa: E402
from schoolpay.main import app  # noqa: E402


class FakeGateway(PaystackClient):
    """Paystack stand-in: records initialize calls and answers verify from a script."""

    def __init__(self) -> None:
        super().__init__(settings)
        self.initialized = []
        self.verifications: Dict[str, GatewayVerification] = {}
        self.verify_calls = 0

    async def initialize(self, **kwargs) -> GatewayInitialization:
        self.initialized.append(kwargs)
        reference = kwargs["reference"]
        return GatewayInitialization(
            authorization_url=f"https://checkout.paystack.com/{reference}",
            access_code=f"ac_{reference[-6:]}",
            reference=reference,
        )

    async def verify(self, reference: str) -> GatewayVerification:
        self.verify_calls += 1
        if reference not in self.verifications:
            raise GatewayUnavailable()
        return self.verifications[reference]

    def settle(
        self,
        reference: str,
        amount_minor: int,
        status: str = "success",
        metadata: Optional[dict] = None,
        channel: str = "card",
    ) -> None:
        self.verifications[reference] = GatewayVerification(
            reference=reference,
            status=status,
            amount_minor=amount_minor,
            paid_at=None,
            channel=channel,
            gateway_reference=str(abs(hash(reference)) % 10**9),
            metadata=metadata or {},
            gateway_status=status,
        )

    @staticmethod
    def sign(body: bytes) -> str:
        return hmac.new(settings.paystack_secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()


@pytest.fixture()
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh SQLite file per test; a file lets several sessions share it like separate workers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
async def client(session_factory, fake_gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app; each request gets its own session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway_client] = lambda: fake_gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers():
    def _headers(tenant_id: UUID, role: str = "ADMIN", user_id: Optional[UUID] = None, email: str = "bursar@example.com"):
        token = create_access_token(
            subject={
                "user_id": str(user_id or uuid4()),
                "tenant_id": str(tenant_id),
                "role": role,
                "email": email,
            }
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def make_tenant(db_session: AsyncSession):
    async def _make(
        status: SubscriptionStatus = SubscriptionStatus.TRIAL,
        trial_end_date: Optional[date] = None,
        subscription_end_date: Optional[date] = None,
        subaccount: Optional[str] = None,
    ) -> Tenant:
        tenant = Tenant(
            name="Greenfield Academy",
            email="billing@greenfield.example.com",
            subscription_status=status.value,
            trial_end_date=trial_end_date or date.today() + timedelta(days=7),
            subscription_end_date=subscription_end_date,
            settlement_subaccount_code=subaccount,
        )
        db_session.add(tenant)
        await db_session.commit()
        await db_session.refresh(tenant)
        return tenant

    return _make


@pytest.fixture()
async def plans(db_session: AsyncSession) -> Dict[PlanType, SubscriptionPlan]:
    """Monthly 3000/30 days, Per Term 8000/90 days, Yearly 30000/365 days."""
    catalogue = {
        PlanType.MONTHLY: (Decimal("3000.00"), 30),
        PlanType.TERM: (Decimal("8000.00"), 90),
        PlanType.YEARLY: (Decimal("30000.00"), 365),
    }
    created = {}
    for plan_type, (amount, days) in catalogue.items():
        plan = SubscriptionPlan(
            name=PLAN_NAMES[plan_type],
            plan_type=plan_type.value,
            amount=amount,
            duration_days=days,
            currency="NGN",
            is_active=True,
        )
        db_session.add(plan)
        created[plan_type] = plan
    await db_session.commit()
    return created


@pytest.fixture()
def make_student_fee(db_session: AsyncSession):
    async def _make(
        tenant: Tenant,
        amount_due: Decimal = Decimal("50000.00"),
        amount_paid: Decimal = Decimal("0"),
        status: str = "pending",
        due_date: Optional[date] = None,
        is_waived: bool = False,
        parent_user_id: Optional[UUID] = None,
    ) -> StudentFee:
        student = Student(tenant_id=tenant.id, full_name="Ada Obi", parent_user_id=parent_user_id)
        db_session.add(student)
        await db_session.flush()
        fee = StudentFee(
            tenant_id=tenant.id,
            student_id=student.id,
            amount_due=amount_due,
            amount_paid=amount_paid,
            status=status,
            is_waived=is_waived,
            due_date=due_date,
            session="2025/2026",
            term="First",
        )
        db_session.add(fee)
        await db_session.commit()
        await db_session.refresh(fee)
        return fee

    return _make
