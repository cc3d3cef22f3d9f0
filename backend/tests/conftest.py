from __future__ import annotations

import asyncio
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

# ---------------------------------------------------------
# Database URL must be settled before the package reads settings
# ---------------------------------------------------------
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")
IS_POSTGRES = bool(TEST_DATABASE_URL) and TEST_DATABASE_URL.startswith("postgresql")

_SQLITE_DIR = tempfile.mkdtemp(prefix="affiliate_ledger_")
if not IS_POSTGRES:
    TEST_DATABASE_URL = f"sqlite+aiosqlite:///{os.path.join(_SQLITE_DIR, 'ledger.db')}"
os.environ["DATABASE_URL_ASYNC"] = TEST_DATABASE_URL

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event, text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from affiliate_ledger.core.security import create_service_token  # noqa: E402
from affiliate_ledger.db.session import get_db  # noqa: E402

# Ensure Base + models are registered before create_all
from affiliate_ledger.db.base import Base  # noqa: E402
import affiliate_ledger.models  # noqa: F401,E402
from affiliate_ledger.models import (  # noqa: E402
    Affiliate,
    AffiliateProgram,
    AffiliateRefCode,
    AffiliateTouch,
    AttributionConfig,
    Clinic,
    CommissionEvent,
    CommissionPlan,
    CommissionTier,
    Patient,
    PlanAssignment,
    ProductRate,
)

requires_postgres = pytest.mark.skipif(not IS_POSTGRES, reason="needs TEST_DATABASE_URL pointing at PostgreSQL")


# ---------------------------------------------------------
# Engine + schema lifecycle
# ---------------------------------------------------------
@pytest.fixture(scope="session")
def test_schema_name() -> str:
    return f"test_{uuid.uuid4().hex}"


async def _wait_for_database(engine) -> None:
    last_exc = None
    for _ in range(30):  # ~30 seconds max wait
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            return
        except Exception as e:  # noqa: BLE001
            last_exc = e
            await asyncio.sleep(1)
    raise RuntimeError(f"Database not reachable for tests: {last_exc}") from last_exc


@pytest_asyncio.fixture(scope="session")
async def engine(test_schema_name: str):
    if IS_POSTGRES:
        engine = create_async_engine(
            TEST_DATABASE_URL,
            future=True,
            echo=False,
            poolclass=NullPool,
            connect_args={"server_settings": {"search_path": test_schema_name, "timezone": "UTC"}},
        )
        await _wait_for_database(engine)

        async with engine.begin() as conn:
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{test_schema_name}"'))
            await conn.execute(text(f'SET search_path TO "{test_schema_name}"'))
            await conn.run_sync(Base.metadata.create_all)

        yield engine

        async with engine.begin() as conn:
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{test_schema_name}" CASCADE'))
        await engine.dispose()
        return

    engine = create_async_engine(TEST_DATABASE_URL, future=True, echo=False, poolclass=NullPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _record):
        # readers must not block the writer between sessions
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="session")
def sessionmaker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ---------------------------------------------------------
# AUTOUSE: clean DB before every test
# ---------------------------------------------------------
@pytest_asyncio.fixture(autouse=True)
async def _clean_tables(engine, test_schema_name: str):
    table_names = [t.name for t in Base.metadata.sorted_tables]
    async with engine.begin() as conn:
        if IS_POSTGRES:
            await conn.execute(text(f'SET search_path TO "{test_schema_name}"'))
            qualified = ", ".join(f'"{test_schema_name}"."{name}"' for name in table_names)
            await conn.execute(text(f"TRUNCATE TABLE {qualified} RESTART IDENTITY CASCADE;"))
        else:
            for name in reversed(table_names):
                await conn.execute(text(f'DELETE FROM "{name}"'))
    yield


# ---------------------------------------------------------
# Sessions
# ---------------------------------------------------------
@pytest_asyncio.fixture()
async def db(sessionmaker):
    """Session the ledger functions run on; tests also use it for setup and assertions."""
    async with sessionmaker() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture()
async def other_db(sessionmaker):
    """Second, independent session for concurrency tests."""
    async with sessionmaker() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------
# FastAPI app + dependency override
# ---------------------------------------------------------
@pytest.fixture()
def app(sessionmaker):
    from affiliate_ledger.main import app as fastapi_app

    async def _override_get_db():
        async with sessionmaker() as session:
            yield session

    fastapi_app.dependency_overrides[get_db] = _override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def service_headers() -> dict[str, str]:
    """Unscoped token (cron / payment flow)."""
    return {"Authorization": f"Bearer {create_service_token('payments')}"}


def clinic_headers(clinic_id: uuid.UUID) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_service_token('admin-ui', clinic_id=clinic_id)}"}


# ---------------------------------------------------------
# Builders
# ---------------------------------------------------------
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)  # a Monday


class LedgerFactory:
    """Direct inserts for test setup. Every returned row is committed."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._seq = 0

    def _tick(self) -> datetime:
        # distinct, increasing creation times keep ordering by created_at deterministic
        self._seq += 1
        return T0 - timedelta(days=365) + timedelta(seconds=self._seq)

    async def _save(self, *rows):
        self.db.add_all(rows)
        await self.db.commit()
        return rows[0]

    async def clinic(self, name: str = "Northside Clinic") -> Clinic:
        return await self._save(Clinic(name=name))

    async def affiliate(
        self,
        clinic: Clinic,
        *,
        ref_code: str | None = "SPRING24",
        display_name: str = "Partner",
        status: str = "ACTIVE",
        ref_code_active: bool = True,
    ) -> Affiliate:
        affiliate = Affiliate(
            clinic_id=clinic.id,
            display_name=display_name,
            status=status,
            lifetime_revenue_cents=0,
            lifetime_conversions=0,
            created_at=self._tick(),
        )
        self.db.add(affiliate)
        await self.db.flush()
        if ref_code:
            self.db.add(
                AffiliateRefCode(
                    clinic_id=clinic.id,
                    affiliate_id=affiliate.id,
                    ref_code=ref_code,
                    is_active=ref_code_active,
                )
            )
        await self.db.commit()
        return affiliate

    async def ref_code(self, affiliate: Affiliate, code: str, *, is_active: bool = True) -> AffiliateRefCode:
        return await self._save(
            AffiliateRefCode(clinic_id=affiliate.clinic_id, affiliate_id=affiliate.id, ref_code=code, is_active=is_active)
        )

    async def program(self, clinic: Clinic, *, minimum_payout_cents: int = 5000) -> AffiliateProgram:
        return await self._save(AffiliateProgram(clinic_id=clinic.id, minimum_payout_cents=minimum_payout_cents))

    async def attribution_config(self, clinic: Clinic, **fields) -> AttributionConfig:
        return await self._save(AttributionConfig(clinic_id=clinic.id, **fields))

    async def plan(
        self,
        clinic: Clinic,
        *,
        tiers: list[dict] | None = None,
        product_rates: list[dict] | None = None,
        **fields,
    ) -> CommissionPlan:
        values = {
            "name": "Standard",
            "plan_type": "PERCENT",
            "initial_percent_bps": 1000,
            "applies_to": "ALL_PAYMENTS",
            "recurring_enabled": True,
            "hold_days": 0,
            "clawback_enabled": True,
            "tier_enabled": False,
            "tier_metric": "REVENUE",
            "is_active": True,
        }
        values.update(fields)
        plan = CommissionPlan(clinic_id=clinic.id, **values)
        plan.tiers = [
            CommissionTier(
                **{"min_revenue_cents": 0, "min_conversions": 0, "name": f"Tier {t['level']}", **t}
            )
            for t in (tiers or [])
        ]
        plan.product_rates = [ProductRate(**{"priority": 0, "is_active": True, **r}) for r in (product_rates or [])]
        return await self._save(plan)

    async def assign(
        self,
        affiliate: Affiliate,
        plan: CommissionPlan,
        *,
        effective_from: datetime | None = None,
        effective_to: datetime | None = None,
    ) -> PlanAssignment:
        return await self._save(
            PlanAssignment(
                clinic_id=affiliate.clinic_id,
                affiliate_id=affiliate.id,
                plan_id=plan.id,
                effective_from=effective_from or (T0 - timedelta(days=180)),
                effective_to=effective_to,
            )
        )

    async def patient(self, clinic: Clinic, *, tags: list[str] | None = None) -> Patient:
        return await self._save(Patient(clinic_id=clinic.id, tags=list(tags or [])))

    async def attributed_patient(
        self,
        clinic: Clinic,
        affiliate: Affiliate,
        *,
        ref_code: str = "SPRING24",
        first_touch_at: datetime | None = None,
    ) -> Patient:
        return await self._save(
            Patient(
                clinic_id=clinic.id,
                tags=[f"affiliate:{ref_code}"],
                attribution_affiliate_id=affiliate.id,
                attribution_ref_code=ref_code,
                attribution_first_touch_at=first_touch_at or T0,
                attribution_source="intake",
            )
        )

    async def event(
        self,
        affiliate: Affiliate,
        patient: Patient,
        *,
        amount_cents: int = 10000,
        commission_cents: int = 1000,
        status: str = "PENDING",
        occurred_at: datetime | None = None,
        ref_code: str | None = "SPRING24",
        stripe_object_id: str | None = None,
    ) -> CommissionEvent:
        return await self._save(
            CommissionEvent(
                clinic_id=affiliate.clinic_id,
                affiliate_id=affiliate.id,
                patient_id=patient.id,
                ref_code=ref_code,
                stripe_event_id=f"evt_{uuid.uuid4().hex}",
                stripe_object_id=stripe_object_id or f"ch_{uuid.uuid4().hex}",
                event_amount_cents=amount_cents,
                commission_amount_cents=commission_cents,
                status=status,
                occurred_at=occurred_at or T0,
                event_metadata={},
            )
        )

    async def touch(
        self,
        affiliate: Affiliate,
        *,
        ref_code: str = "SPRING24",
        fingerprint: str | None = None,
        cookie_id: str | None = None,
        created_at: datetime | None = None,
        touch_type: str = "CLICK",
    ) -> AffiliateTouch:
        return await self._save(
            AffiliateTouch(
                clinic_id=affiliate.clinic_id,
                affiliate_id=affiliate.id,
                ref_code=ref_code,
                touch_type=touch_type,
                visitor_fingerprint=fingerprint or uuid.uuid4().hex,
                cookie_id=cookie_id,
                created_at=created_at or T0,
            )
        )

    async def reload(self, model, row_id):
        """Fresh copy from the database; ledger writes bypass the identity map."""
        return await self.db.get(model, row_id, populate_existing=True)


@pytest.fixture()
def factory(db) -> LedgerFactory:
    return LedgerFactory(db)
