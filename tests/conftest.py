"""
Pytest configuration and fixtures.

Tests run against an in-memory SQLite database shared through a
StaticPool, so every session in a test sees the same data.
"""
import uuid
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from proofpay.config import Settings
from proofpay.core.admin_settings import AdminSettingsService
from proofpay.core.disputes import DisputeService
from proofpay.core.ingestion import ReceiptIngestor
from proofpay.core.shares import ShareTokenService
from proofpay.database.connection import create_session_factory
from proofpay.database.models import Base, Receipt, ReceiptItem


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests spanning several components")


class RecordingEventSink:
    """Keeps recorded audit events in memory."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Optional[str], Dict[str, Any]]] = []

    async def record(
        self, event_type: str, subject_id: Optional[str], metadata: Dict[str, Any]
    ) -> None:
        self.events.append((event_type, subject_id, metadata))

    def of_type(self, event_type: str) -> List[Tuple[str, Optional[str], Dict[str, Any]]]:
        return [e for e in self.events if e[0] == event_type]


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        app_name="proofpay-test",
        app_env="test",
        log_level="DEBUG",
        log_json=False,
        web_app_url="https://verify.example.com",
        square_access_token="sq_test_fake_token",
    )


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def event_sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def admin_settings(test_settings: Settings, event_sink: RecordingEventSink) -> AdminSettingsService:
    return AdminSettingsService(settings=test_settings, event_sink=event_sink)


@pytest.fixture
def dispute_service(test_settings: Settings, event_sink: RecordingEventSink) -> DisputeService:
    return DisputeService(settings=test_settings, event_sink=event_sink)


@pytest.fixture
def share_service(
    test_settings: Settings,
    admin_settings: AdminSettingsService,
    dispute_service: DisputeService,
    event_sink: RecordingEventSink,
) -> ShareTokenService:
    return ShareTokenService(
        settings=test_settings,
        admin_settings=admin_settings,
        dispute_service=dispute_service,
        event_sink=event_sink,
    )


@pytest.fixture
def ingestor(test_settings: Settings, event_sink: RecordingEventSink) -> ReceiptIngestor:
    return ReceiptIngestor(settings=test_settings, event_sink=event_sink)


@pytest.fixture
def make_receipt(test_db: AsyncSession) -> Any:
    """
    Factory for stored receipts.

    ``items`` is a list of (name, unit price, quantity) tuples.
    """

    async def _make(
        payment_id: Optional[str] = None,
        amount: str = "25.00",
        items: Tuple[Tuple[str, str, int], ...] = (),
        **fields: Any,
    ) -> Receipt:
        receipt = Receipt(
            payment_id=payment_id or f"pay_{uuid.uuid4().hex[:12]}",
            amount=Decimal(amount),
            currency="USD",
            **fields,
        )
        test_db.add(receipt)
        await test_db.flush()
        for name, price, quantity in items:
            test_db.add(
                ReceiptItem(
                    receipt_id=receipt.id,
                    item_name=name,
                    item_price=Decimal(price),
                    quantity=quantity,
                )
            )
        await test_db.commit()
        return receipt

    return _make
