"""
Shared fixtures for videobatch tests.
"""

import os
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Generator

# ============================================================================
# Set test environment BEFORE any videobatch imports
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SUPABASE_JWT_SECRET"] = "test-secret-key-for-testing-only"
os.environ["RABBITMQ_URL"] = ""
os.environ["CORS_ORIGINS"] = '["http://localhost:3000"]'
os.environ["WEBHOOK_SECRET"] = ""
os.environ["GENERATE_ENDPOINT"] = "http://generator.test/generate"

# Clear cached settings before any import
import videobatch.core.config
videobatch.core.config.get_settings.cache_clear()

import pytest
from faker import Faker
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from videobatch.core.security import create_access_token, hash_api_key
from videobatch.models import (
    Base,
    BatchJob,
    BatchSource,
    BatchStatus,
    EnterpriseApiKey,
    TaskStatus,
    VideoTask,
)
from videobatch.services.credits import (
    CreditLedger,
    DeductResult,
    FinalizeResult,
    InsufficientCreditsError,
)

fake = Faker()


class InMemoryCreditLedger(CreditLedger):
    """Credit ledger kept in dicts, with the same all-or-nothing freeze semantics."""

    def __init__(self, balances: dict | None = None) -> None:
        self.balances: dict[uuid.UUID, int] = defaultdict(int, balances or {})
        self.holds: dict[uuid.UUID, int] = {}
        self.finalized: dict[uuid.UUID, int] = {}
        self.usage: list[tuple[uuid.UUID, str, int]] = []
        self.grants: list[dict] = []
        self.freeze_error: Exception | None = None
        self.check_error: Exception | None = None
        self.finalize_error: Exception | None = None

    def check_available(self, user_id):
        if self.check_error is not None:
            raise self.check_error
        return self.balances[user_id]

    def freeze(self, user_id, batch_id, amount):
        if self.freeze_error is not None:
            raise self.freeze_error
        if batch_id in self.holds:
            return
        if self.balances[user_id] < amount:
            raise InsufficientCreditsError(amount, self.balances[user_id])
        self.balances[user_id] -= amount
        self.holds[batch_id] = amount

    def finalize(self, user_id, batch_id, spent):
        if self.finalize_error is not None:
            raise self.finalize_error
        if batch_id in self.finalized or batch_id not in self.holds:
            return FinalizeResult(already_finalized=True, refunded=0)
        amount = self.holds.pop(batch_id)
        refund = amount - min(spent, amount)
        self.balances[user_id] += refund
        self.finalized[batch_id] = spent
        return FinalizeResult(already_finalized=False, refunded=refund)

    def deduct(self, user_id, amount, model):
        if self.balances[user_id] < amount:
            raise InsufficientCreditsError(amount, self.balances[user_id])
        self.balances[user_id] -= amount
        return DeductResult(bonus_used=0, permanent_used=amount, remaining_credits=self.balances[user_id])

    def record_usage(self, user_id, model, count=1):
        self.usage.append((user_id, model, count))

    def grant(self, user_id, permanent, bonus, bonus_expires_at, is_starter=False):
        self.grants.append(
            {
                "user_id": user_id,
                "permanent": permanent,
                "bonus": bonus,
                "bonus_expires_at": bonus_expires_at,
                "is_starter": is_starter,
            }
        )
        self.balances[user_id] += permanent + bonus


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


# ============================================================================
# User / Ledger Fixtures
# ============================================================================


@pytest.fixture
def user_id() -> uuid.UUID:
    """Generate a random user ID."""
    return uuid.uuid4()


@pytest.fixture
def ledger(user_id: uuid.UUID) -> InMemoryCreditLedger:
    """Ledger where the test user holds 100 credits."""
    return InMemoryCreditLedger({user_id: 100})


@pytest.fixture
def auth_token(user_id: uuid.UUID) -> str:
    """Session token for the test user."""
    return create_access_token(data={"sub": str(user_id), "email": fake.email()})


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Generate authorization headers with Bearer token."""
    return {"Authorization": f"Bearer {auth_token}"}


# ============================================================================
# Enterprise Fixtures
# ============================================================================


@pytest.fixture
def raw_api_key() -> str:
    return f"vb_live_{fake.sha256()[:32]}"


@pytest.fixture
def api_key(db_session: Session, user_id: uuid.UUID, raw_api_key: str) -> EnterpriseApiKey:
    """Active API key owned by the test user, default rate limit and price."""
    key = EnterpriseApiKey(
        id=uuid.uuid4(),
        user_id=user_id,
        name=fake.company(),
        key_hash=hash_api_key(raw_api_key),
        is_active=True,
    )
    db_session.add(key)
    db_session.commit()
    db_session.refresh(key)
    return key


# ============================================================================
# Batch Fixtures
# ============================================================================


def _make_batch(
    db: Session,
    user_id: uuid.UUID,
    prompts: list[str] | None = None,
    cost_per_video: int = 10,
    status: BatchStatus = BatchStatus.QUEUED,
    frozen: bool = True,
    source: BatchSource = BatchSource.CONSUMER,
    created_at: datetime | None = None,
    enqueued_at: datetime | None = None,
    webhook_url: str | None = None,
) -> BatchJob:
    """Insert a batch with pending tasks, as the intake pipeline leaves it."""
    prompts = prompts or [fake.sentence() for _ in range(2)]
    batch = BatchJob(
        id=uuid.uuid4(),
        user_id=user_id,
        source=source,
        status=status,
        total_count=len(prompts),
        cost_per_video=cost_per_video,
        frozen_credits=len(prompts) * cost_per_video if frozen else 0,
        webhook_url=webhook_url,
        created_at=created_at or datetime.now(timezone.utc),
        enqueued_at=enqueued_at,
    )
    db.add(batch)
    db.flush()
    db.add_all(
        VideoTask(
            user_id=user_id,
            batch_job_id=batch.id,
            batch_index=index,
            prompt=prompt,
            model="sora-2",
            status=TaskStatus.PENDING,
        )
        for index, prompt in enumerate(prompts)
    )
    db.commit()
    db.refresh(batch)
    return batch


@pytest.fixture
def batch_factory(db_session: Session):
    """Build batches directly in the test database: ``batch_factory(user_id, prompts=..., ...)``."""

    def factory(user_id: uuid.UUID, **kwargs) -> BatchJob:
        return _make_batch(db_session, user_id, **kwargs)

    return factory


@pytest.fixture
def queued_batch(db_session: Session, user_id: uuid.UUID, ledger: InMemoryCreditLedger) -> BatchJob:
    """Two-task batch with its 20 credits already frozen in the ledger."""
    batch = _make_batch(db_session, user_id)
    ledger.freeze(user_id, batch.id, batch.frozen_credits)
    return batch
