"""
Stock Ledger — append-only movements and the projection kept beside them.

Writers of the ledger are the only mutators of stock. ``append`` runs as one
database transaction that:

  1. validates the item and the entry sign,
  2. short-circuits on a known idempotency key,
  3. loads the projection (cache or stored row, caught up to the ledger
     head, else a full fold),
  4. inserts the entry at ``last_seq + 1`` (unique per item),
  5. compare-and-sets the stored projection on the previous ``last_seq``.

A lost race on step 4 or 5 invalidates the cache and refolds from the ledger
before retrying; the caller only sees CONCURRENT_APPEND once
``append_max_retries`` is spent.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import Clock
from core.config import Settings
from core.errors import EngineError, ErrorKind
from core.locks import KeyedLocks
from core.types import EntryType
from db.models import Item, LedgerEntry, StockProjection
from inventory.projection import Projection, ProjectionCache, fold

logger = structlog.get_logger()


@dataclass(frozen=True)
class Reference:
    kind: str
    id: str
    description: str = ""


@dataclass(frozen=True)
class Location:
    source: str | None = None
    destination: str | None = None


@dataclass
class NewEntry:
    """A ledger entry before the ledger assigns its seq."""

    tenant_id: str
    item_id: str
    entry_type: EntryType
    quantity: int
    unit_cost: float = 0.0
    actor_id: str = "system"
    timestamp: datetime | None = None
    reference: Reference | None = None
    location: Location | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.entry_type = EntryType(self.entry_type)

    @property
    def idempotency_key(self) -> str | None:
        key = self.metadata.get("idempotency_key")
        return str(key) if key else None

    @property
    def allow_negative(self) -> bool:
        return bool(self.metadata.get("allow_negative", False))


@dataclass(frozen=True)
class AppendResult:
    seq: int
    on_hand: int
    weighted_average_cost: float
    duplicate: bool = False


@dataclass(frozen=True)
class AppendEvent:
    """What append hooks see after an entry is durable."""

    entry: NewEntry
    seq: int
    previous_on_hand: int
    projection: Projection
    reorder_point: int
    auto_reorder_enabled: bool

    @property
    def crossed_reorder_point(self) -> bool:
        return self.auto_reorder_enabled and self.projection.on_hand <= self.reorder_point

    @property
    def restocked_above_reorder_point(self) -> bool:
        return self.entry.entry_type == EntryType.RESTOCK and self.projection.on_hand > self.reorder_point


AppendHook = Callable[[AppendEvent], Awaitable[None]]


class _AppendConflict(Exception):
    """Lost a seq or projection compare-and-set race."""


def validate_entry(entry: NewEntry) -> None:
    """Reject sign / location violations at the boundary."""
    qty = entry.quantity
    kind = entry.entry_type

    if not isinstance(qty, int) or isinstance(qty, bool):
        raise EngineError(ErrorKind.INVALID_ENTRY, "quantity must be an integer", quantity=qty)
    if entry.unit_cost < 0:
        raise EngineError(ErrorKind.INVALID_ENTRY, "unit_cost must be non-negative", unit_cost=entry.unit_cost)

    if kind == EntryType.RESTOCK and qty <= 0:
        raise EngineError(ErrorKind.INVALID_ENTRY, "restock quantity must be positive", quantity=qty)
    if kind in (EntryType.CONSUMPTION, EntryType.DAMAGE_CHARGE) and qty >= 0:
        raise EngineError(ErrorKind.INVALID_ENTRY, f"{kind.value} quantity must be negative", quantity=qty)
    if kind == EntryType.ADJUSTMENT and qty == 0:
        raise EngineError(ErrorKind.INVALID_ENTRY, "adjustment quantity must be non-zero")
    if kind == EntryType.TRANSFER:
        if qty != 0:
            raise EngineError(ErrorKind.INVALID_ENTRY, "transfer quantity must be zero", quantity=qty)
        loc = entry.location
        if loc is None or not loc.source or not loc.destination:
            raise EngineError(ErrorKind.INVALID_ENTRY, "transfer requires both source and destination locations")


class StockLedger:
    """Append-only stock ledger with a write-through projection."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock,
        *,
        locks: KeyedLocks | None = None,
        cache: ProjectionCache | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock
        self._locks = locks or KeyedLocks()
        self.cache = cache or ProjectionCache()
        self._hooks: list[AppendHook] = []

    def add_append_hook(self, hook: AppendHook) -> None:
        self._hooks.append(hook)

    # ── Writes ───────────────────────────────────────────────────────────

    async def append(self, entry: NewEntry) -> AppendResult:
        validate_entry(entry)
        key = (entry.tenant_id, entry.item_id)

        async with self._locks.hold(("ledger", *key)):
            refold = False
            for attempt in range(1, self._settings.append_max_retries + 1):
                try:
                    result, event = await self._append_once(entry, refold=refold)
                except _AppendConflict as exc:
                    logger.warning(
                        "ledger.append_conflict",
                        tenant_id=entry.tenant_id,
                        item_id=entry.item_id,
                        attempt=attempt,
                        reason=str(exc),
                    )
                    self.cache.invalidate(key)
                    refold = True
                    await asyncio.sleep(0)
                    continue
                break
            else:
                raise EngineError(
                    ErrorKind.CONCURRENT_APPEND,
                    "Ledger append contention exhausted retries",
                    tenant_id=entry.tenant_id,
                    item_id=entry.item_id,
                    attempts=self._settings.append_max_retries,
                )

        if event is not None:
            logger.info(
                "ledger.appended",
                tenant_id=entry.tenant_id,
                item_id=entry.item_id,
                seq=result.seq,
                entry_type=entry.entry_type.value,
                quantity=entry.quantity,
                on_hand=result.on_hand,
            )
            await self._run_hooks(event)
        return result

    async def _append_once(self, entry: NewEntry, *, refold: bool) -> tuple[AppendResult, AppendEvent | None]:
        key = (entry.tenant_id, entry.item_id)
        recorded_at = entry.timestamp or self._clock.utcnow()
        try:
            async with self._session_factory() as db:
                async with db.begin():
                    item = await db.get(Item, key)
                    if item is None or not item.active:
                        raise EngineError(
                            ErrorKind.UNKNOWN_ITEM,
                            "Unknown or inactive item",
                            tenant_id=entry.tenant_id,
                            item_id=entry.item_id,
                        )

                    stored = await db.get(StockProjection, key)
                    current = await self._load(db, entry.tenant_id, entry.item_id, stored, refold=refold)

                    if entry.idempotency_key:
                        existing = await self._find_by_idempotency_key(db, entry)
                        if existing is not None:
                            _check_same_movement(existing, entry)
                            return (
                                AppendResult(
                                    seq=existing.seq,
                                    on_hand=current.on_hand,
                                    weighted_average_cost=current.weighted_average_cost,
                                    duplicate=True,
                                ),
                                None,
                            )

                    seq = current.last_seq + 1
                    updated = current.apply(seq, entry.entry_type, entry.quantity, entry.unit_cost, recorded_at)
                    if entry.quantity < 0 and updated.on_hand < 0 and not entry.allow_negative:
                        raise EngineError(
                            ErrorKind.INSUFFICIENT_STOCK,
                            "Entry would drive on-hand below zero",
                            tenant_id=entry.tenant_id,
                            item_id=entry.item_id,
                            on_hand=current.on_hand,
                            quantity=entry.quantity,
                        )

                    db.add(_to_row(entry, seq, recorded_at))
                    await db.flush()
                    await self._compare_and_set(db, stored, updated)
        except IntegrityError as exc:
            raise _AppendConflict(str(exc.orig)) from exc

        self.cache.put(updated)
        event = AppendEvent(
            entry=entry,
            seq=seq,
            previous_on_hand=current.on_hand,
            projection=updated,
            reorder_point=item.reorder_point,
            auto_reorder_enabled=item.auto_reorder_enabled,
        )
        return (
            AppendResult(seq=seq, on_hand=updated.on_hand, weighted_average_cost=updated.weighted_average_cost),
            event,
        )

    async def _compare_and_set(self, db: AsyncSession, stored: StockProjection | None, updated: Projection) -> None:
        if stored is None:
            db.add(
                StockProjection(
                    tenant_id=updated.tenant_id,
                    item_id=updated.item_id,
                    on_hand=updated.on_hand,
                    last_seq=updated.last_seq,
                    weighted_average_cost=updated.weighted_average_cost,
                    last_updated=updated.last_updated,
                )
            )
            await db.flush()
            return

        expected_seq = stored.last_seq
        result = await db.execute(
            update(StockProjection)
            .where(
                StockProjection.tenant_id == updated.tenant_id,
                StockProjection.item_id == updated.item_id,
                StockProjection.last_seq == expected_seq,
            )
            .values(
                on_hand=updated.on_hand,
                last_seq=updated.last_seq,
                weighted_average_cost=updated.weighted_average_cost,
                last_updated=updated.last_updated,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise _AppendConflict(f"projection moved past last_seq={expected_seq}")

    async def _run_hooks(self, event: AppendEvent) -> None:
        for hook in self._hooks:
            try:
                await hook(event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "ledger.hook_failed",
                    tenant_id=event.entry.tenant_id,
                    item_id=event.entry.item_id,
                    seq=event.seq,
                    error=str(exc),
                    exc_info=True,
                )

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_projection(self, tenant_id: str, item_id: str) -> Projection:
        """Cached copy caught up to the ledger's head, else the stored row plus ledger tail.

        Other processes append to the same ledger, so a warm entry is only
        trusted after checking the item's max seq.
        """
        key = (tenant_id, item_id)
        async with self._session_factory() as db:
            item = await db.get(Item, key)
            if item is None:
                raise EngineError(ErrorKind.UNKNOWN_ITEM, "Unknown item", tenant_id=tenant_id, item_id=item_id)
            cached = self.cache.get(key)
            if cached is not None:
                projection = await self._catch_up(db, cached)
                if projection is not cached:
                    self.cache.put(projection, expected_last_seq=cached.last_seq)
                return projection
            stored = await db.get(StockProjection, key)
            projection = await self._load(db, tenant_id, item_id, stored, refold=False)
        self.cache.put(projection)
        return projection

    async def refold(self, tenant_id: str, item_id: str) -> Projection:
        """Rebuild the projection from the ledger alone and replace the cached copy."""
        key = (tenant_id, item_id)
        async with self._session_factory() as db:
            projection = await self._fold_with_timeout(db, tenant_id, item_id)
        self.cache.invalidate(key)
        self.cache.put(projection)
        return projection

    async def projection_at(self, tenant_id: str, item_id: str, seq: int) -> Projection:
        """Fold of the ledger prefix with seq' ≤ seq."""
        entries = await self.entries(tenant_id, item_id, max_seq=seq)
        return fold(tenant_id, item_id, entries)

    async def entries(
        self,
        tenant_id: str,
        item_id: str,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        entry_types: tuple[EntryType, ...] | None = None,
        max_seq: int | None = None,
    ) -> list[LedgerEntry]:
        """Range scan in seq order. ``since`` is exclusive, ``until`` inclusive."""
        query = select(LedgerEntry).where(LedgerEntry.tenant_id == tenant_id, LedgerEntry.item_id == item_id)
        if since is not None:
            query = query.where(LedgerEntry.recorded_at > since)
        if until is not None:
            query = query.where(LedgerEntry.recorded_at <= until)
        if entry_types:
            query = query.where(LedgerEntry.entry_type.in_([t.value for t in entry_types]))
        if max_seq is not None:
            query = query.where(LedgerEntry.seq <= max_seq)
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(LedgerEntry.seq))
            return list(result.scalars().all())

    async def last_increase(self, tenant_id: str, item_id: str, *, max_seq: int) -> LedgerEntry | None:
        """Most recent entry with a positive quantity at or before ``max_seq``."""
        query = (
            select(LedgerEntry)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.item_id == item_id,
                LedgerEntry.seq <= max_seq,
                LedgerEntry.quantity > 0,
            )
            .order_by(LedgerEntry.seq.desc())
            .limit(1)
        )
        async with self._session_factory() as db:
            return (await db.execute(query)).scalar_one_or_none()

    async def tenant_entries(
        self,
        tenant_id: str,
        *,
        since: datetime,
        until: datetime,
        entry_types: tuple[EntryType, ...] | None = None,
    ) -> list[LedgerEntry]:
        query = select(LedgerEntry).where(
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.recorded_at > since,
            LedgerEntry.recorded_at <= until,
        )
        if entry_types:
            query = query.where(LedgerEntry.entry_type.in_([t.value for t in entry_types]))
        async with self._session_factory() as db:
            result = await db.execute(query.order_by(LedgerEntry.item_id, LedgerEntry.seq))
            return list(result.scalars().all())

    # ── Internals ────────────────────────────────────────────────────────

    async def _load(
        self,
        db: AsyncSession,
        tenant_id: str,
        item_id: str,
        stored: StockProjection | None,
        *,
        refold: bool,
    ) -> Projection:
        key = (tenant_id, item_id)
        if not refold:
            cached = self.cache.get(key)
            if cached is not None:
                return await self._catch_up(db, cached)
            if stored is not None:
                return await self._fold_tail(db, Projection.from_row(stored))
        return await self._fold_with_timeout(db, tenant_id, item_id)

    async def _catch_up(self, db: AsyncSession, cached: Projection) -> Projection:
        """Return ``cached`` if it sits at the ledger head, else fold the newer entries onto it."""
        head = await db.scalar(
            select(func.max(LedgerEntry.seq)).where(
                LedgerEntry.tenant_id == cached.tenant_id,
                LedgerEntry.item_id == cached.item_id,
            )
        )
        if head is None or head <= cached.last_seq:
            return cached
        logger.debug(
            "ledger.cache_behind",
            tenant_id=cached.tenant_id,
            item_id=cached.item_id,
            cached_seq=cached.last_seq,
            head_seq=head,
        )
        return await self._fold_tail(db, cached)

    @staticmethod
    async def _fold_tail(db: AsyncSession, base: Projection) -> Projection:
        tail = await db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.tenant_id == base.tenant_id,
                LedgerEntry.item_id == base.item_id,
                LedgerEntry.seq > base.last_seq,
            )
            .order_by(LedgerEntry.seq)
        )
        return fold(base.tenant_id, base.item_id, tail.scalars().all(), start=base)

    async def _fold_with_timeout(self, db: AsyncSession, tenant_id: str, item_id: str) -> Projection:
        async def _fold() -> Projection:
            result = await db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.tenant_id == tenant_id, LedgerEntry.item_id == item_id)
                .order_by(LedgerEntry.seq)
            )
            return fold(tenant_id, item_id, result.scalars().all())

        try:
            return await asyncio.wait_for(_fold(), timeout=self._settings.projection_refold_timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning("ledger.refold_timeout", tenant_id=tenant_id, item_id=item_id)
            raise EngineError(
                ErrorKind.PROJECTION_TIMEOUT,
                "Projection refold timed out",
                tenant_id=tenant_id,
                item_id=item_id,
            ) from exc

    @staticmethod
    async def _find_by_idempotency_key(db: AsyncSession, entry: NewEntry) -> LedgerEntry | None:
        result = await db.execute(
            select(LedgerEntry).where(
                LedgerEntry.tenant_id == entry.tenant_id,
                LedgerEntry.item_id == entry.item_id,
                LedgerEntry.idempotency_key == entry.idempotency_key,
            )
        )
        return result.scalar_one_or_none()


def _check_same_movement(existing: LedgerEntry, entry: NewEntry) -> None:
    if existing.entry_type != entry.entry_type.value or existing.quantity != entry.quantity:
        raise EngineError(
            ErrorKind.DUPLICATE_IDEMPOTENCY_KEY,
            "Idempotency key already used for a different movement",
            idempotency_key=entry.idempotency_key,
            existing_seq=existing.seq,
        )


def _to_row(entry: NewEntry, seq: int, recorded_at: datetime) -> LedgerEntry:
    ref = entry.reference
    loc = entry.location
    return LedgerEntry(
        tenant_id=entry.tenant_id,
        item_id=entry.item_id,
        seq=seq,
        recorded_at=recorded_at,
        entry_type=entry.entry_type.value,
        quantity=entry.quantity,
        unit_cost=entry.unit_cost,
        actor_id=entry.actor_id,
        reference_kind=ref.kind if ref else None,
        reference_id=ref.id if ref else None,
        reference_description=ref.description if ref else None,
        location_from=loc.source if loc else None,
        location_to=loc.destination if loc else None,
        entry_metadata=dict(entry.metadata),
        idempotency_key=entry.idempotency_key,
    )
