"""
Test Configuration — Fixtures for a file-backed async DB, frozen clock and fakes.

Each test gets its own SQLite file so concurrent sessions inside the engine
(scheduler jobs, dispatcher passes) see each other's commits.
"""

from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from alerts.publisher import InMemoryAlertPublisher
from alerts.recipients import StaticRecipientDirectory
from alerts.transport import OutboundMessage, Recipient, SendReceipt, Transport, TransportError
from core.clock import FrozenClock
from core.config import Settings
from core.types import EntryType
from db.session import Base, build_session_factory
from inventory.engine import InventoryEngine
from inventory.items import ReorderPolicy
from inventory.ledger import NewEntry

TENANT_ID = "hotel-1"
START = datetime(2026, 3, 15, 12, 0, 0)

MANAGER = Recipient(id="manager-1", address="ops@hotel.test")
ADMIN = Recipient(id="admin-1", address="gm@hotel.test")
SUPPLIER = Recipient(id="acme-orders", address="orders@acme.test")


class RecordingTransport(Transport):
    """Records every message; failures can be scripted per call."""

    def __init__(self, *, multi: bool = True, idempotent: bool = False):
        self.supports_multi_recipient = multi
        self.honours_idempotency_key = idempotent
        self.sent: list[OutboundMessage] = []
        self.failures: list[TransportError] = []

    def fail_next(self, *errors: TransportError) -> None:
        self.failures.extend(errors)

    async def send(self, message: OutboundMessage) -> SendReceipt:
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(message)
        return SendReceipt(message_id=f"msg-{len(self.sent)}", accepted=tuple(r.id for r in message.recipients))

    def recipients_sent(self) -> list[str]:
        return [r.id for m in self.sent for r in m.recipients]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'larder.db'}",
        app_env="test",
        critical_categories={"medical"},
    )


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def directory():
    return StaticRecipientDirectory(
        {
            TENANT_ID: {
                "manager": [MANAGER],
                "admin": [ADMIN],
                "supplier:acme": [SUPPLIER],
            }
        }
    )


@pytest.fixture
def publisher():
    return InMemoryAlertPublisher()


@pytest.fixture
async def db_engine(settings):
    engine = create_async_engine(settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def engine(session_factory, settings, clock, transport, directory, publisher):
    larder = InventoryEngine(session_factory, settings, clock, transport, directory, publisher=publisher)
    yield larder
    await larder.close()


@pytest.fixture
async def peer_engine(db_engine, settings, clock, directory):
    """A second engine on the same database with its own pool, cache and locks."""
    peer_db = create_async_engine(settings.database_url, echo=False)
    larder = InventoryEngine(
        build_session_factory(peer_db),
        settings,
        clock,
        RecordingTransport(),
        directory,
        publisher=InMemoryAlertPublisher(),
        db_engine=peer_db,
    )
    yield larder
    await larder.close()


# ── Helpers ────────────────────────────────────────────────────────────────


async def register(
    engine,
    item_id: str = "towels",
    *,
    reorder_point: int = 10,
    reorder_quantity: int = 20,
    max_stock: int = 100,
    lead_time_days: int = 7,
    auto_reorder_enabled: bool = True,
    tenant_id: str = TENANT_ID,
    **fields,
):
    policy = ReorderPolicy(
        reorder_point=reorder_point,
        reorder_quantity=reorder_quantity,
        max_stock=max_stock,
        lead_time_days=lead_time_days,
        auto_reorder_enabled=auto_reorder_enabled,
    )
    return await engine.catalogue.register_item(tenant_id, item_id, name=fields.pop("name", item_id.title()), policy=policy, **fields)


async def restock(engine, item_id: str, quantity: int, unit_cost: float = 0.0, **kwargs):
    result = await engine.append(
        NewEntry(TENANT_ID, item_id, EntryType.RESTOCK, quantity, unit_cost=unit_cost, **kwargs)
    )
    await engine.scheduler.wait_idle()
    return result


async def consume(engine, item_id: str, quantity: int, **kwargs):
    result = await engine.append(NewEntry(TENANT_ID, item_id, EntryType.CONSUMPTION, -abs(quantity), **kwargs))
    await engine.scheduler.wait_idle()
    return result
