"""
Item catalogue and reorder policy history.

Every policy edit is appended to reorder_policy_changes so forecasts can
attribute consumption behaviour to the policy that was in force at the time.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.clock import Clock
from core.errors import EngineError, ErrorKind
from db.models import Item, ReorderPolicyChange

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReorderPolicy:
    reorder_point: int
    reorder_quantity: int
    max_stock: int
    lead_time_days: int = 7
    auto_reorder_enabled: bool = True

    def validate(self) -> None:
        if self.reorder_point < 0:
            raise EngineError(ErrorKind.INVALID_POLICY, "reorder_point must be non-negative")
        if self.reorder_point > self.max_stock:
            raise EngineError(
                ErrorKind.INVALID_POLICY,
                "reorder_point must not exceed max_stock",
                reorder_point=self.reorder_point,
                max_stock=self.max_stock,
            )
        if self.auto_reorder_enabled and self.reorder_quantity < 1:
            raise EngineError(ErrorKind.INVALID_POLICY, "reorder_quantity must be >= 1 when auto reorder is enabled")
        if self.lead_time_days < 0:
            raise EngineError(ErrorKind.INVALID_POLICY, "lead_time_days must be non-negative")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def of(cls, item: Item) -> "ReorderPolicy":
        return cls(**item.policy())


class ItemCatalogue:
    """Register items, edit their policies and answer policy-at-time queries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], clock: Clock):
        self._session_factory = session_factory
        self._clock = clock

    async def register_item(
        self,
        tenant_id: str,
        item_id: str,
        *,
        name: str,
        policy: ReorderPolicy,
        category: str = "general",
        unit_of_measure: str = "unit",
        cost: float = 0.0,
        preferred_supplier: str | None = None,
        actor_id: str = "system",
    ) -> Item:
        policy.validate()
        now = self._clock.utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                if await db.get(Item, (tenant_id, item_id)) is not None:
                    raise EngineError(ErrorKind.INVALID_POLICY, "Item already registered", item_id=item_id)
                item = Item(
                    tenant_id=tenant_id,
                    item_id=item_id,
                    name=name,
                    category=category,
                    unit_of_measure=unit_of_measure,
                    cost=cost,
                    preferred_supplier=preferred_supplier,
                    active=True,
                    created_at=now,
                    updated_at=now,
                    **policy.to_dict(),
                )
                db.add(item)
                db.add(
                    ReorderPolicyChange(
                        tenant_id=tenant_id,
                        item_id=item_id,
                        revision=1,
                        changed_at=now,
                        actor_id=actor_id,
                        previous_policy=None,
                        new_policy=policy.to_dict(),
                    )
                )

        logger.info("items.registered", tenant_id=tenant_id, item_id=item_id, **policy.to_dict())
        return item

    async def update_policy(self, tenant_id: str, item_id: str, *, actor_id: str = "system", **changes) -> Item:
        """Apply policy field changes and record the diff."""
        now = self._clock.utcnow()
        async with self._session_factory() as db:
            async with db.begin():
                item = await self._require(db, tenant_id, item_id)
                previous = ReorderPolicy.of(item)
                unknown = set(changes) - set(previous.to_dict())
                if unknown:
                    raise EngineError(ErrorKind.INVALID_POLICY, f"Unknown policy fields: {sorted(unknown)}")

                updated = ReorderPolicy(**{**previous.to_dict(), **changes})
                updated.validate()
                if updated == previous:
                    return item

                revision = await db.scalar(
                    select(func.max(ReorderPolicyChange.revision)).where(
                        ReorderPolicyChange.tenant_id == tenant_id,
                        ReorderPolicyChange.item_id == item_id,
                    )
                )
                for field_name, value in updated.to_dict().items():
                    setattr(item, field_name, value)
                item.updated_at = now
                db.add(
                    ReorderPolicyChange(
                        tenant_id=tenant_id,
                        item_id=item_id,
                        revision=(revision or 0) + 1,
                        changed_at=now,
                        actor_id=actor_id,
                        previous_policy=previous.to_dict(),
                        new_policy=updated.to_dict(),
                    )
                )

        logger.info("items.policy_updated", tenant_id=tenant_id, item_id=item_id, actor_id=actor_id, changes=changes)
        return item

    async def deactivate_item(self, tenant_id: str, item_id: str) -> Item:
        async with self._session_factory() as db:
            async with db.begin():
                item = await self._require(db, tenant_id, item_id)
                item.active = False
                item.updated_at = self._clock.utcnow()
        logger.info("items.deactivated", tenant_id=tenant_id, item_id=item_id)
        return item

    async def get_item(self, tenant_id: str, item_id: str) -> Item | None:
        async with self._session_factory() as db:
            return await db.get(Item, (tenant_id, item_id))

    async def require_active_item(self, tenant_id: str, item_id: str) -> Item:
        item = await self.get_item(tenant_id, item_id)
        if item is None or not item.active:
            raise EngineError(ErrorKind.UNKNOWN_ITEM, "Unknown or inactive item", tenant_id=tenant_id, item_id=item_id)
        return item

    async def active_items(self, tenant_id: str) -> list[Item]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Item).where(Item.tenant_id == tenant_id, Item.active.is_(True)).order_by(Item.item_id)
            )
            return list(result.scalars().all())

    async def tenants(self) -> list[str]:
        """Tenants with at least one active item."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(Item.tenant_id).where(Item.active.is_(True)).distinct().order_by(Item.tenant_id)
            )
            return [row.tenant_id for row in result.all()]

    async def policy_history(self, tenant_id: str, item_id: str) -> list[ReorderPolicyChange]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReorderPolicyChange)
                .where(ReorderPolicyChange.tenant_id == tenant_id, ReorderPolicyChange.item_id == item_id)
                .order_by(ReorderPolicyChange.revision)
            )
            return list(result.scalars().all())

    async def policy_at(self, tenant_id: str, item_id: str, at: datetime) -> ReorderPolicy | None:
        """Policy in force at ``at`` (None before the item existed)."""
        in_force = None
        for change in await self.policy_history(tenant_id, item_id):
            if change.changed_at > at:
                break
            in_force = change
        return ReorderPolicy(**in_force.new_policy) if in_force else None

    @staticmethod
    async def _require(db: AsyncSession, tenant_id: str, item_id: str) -> Item:
        item = await db.get(Item, (tenant_id, item_id))
        if item is None:
            raise EngineError(ErrorKind.UNKNOWN_ITEM, "Unknown item", tenant_id=tenant_id, item_id=item_id)
        return item
