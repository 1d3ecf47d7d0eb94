"""
Recipient resolution for notification stages.

Roles:
  INITIAL    → manager + admin
  ESCALATION → admin
  SUPPLIER   → supplier:{handle}   (the item's preferred supplier)

SettingsRecipientDirectory reads a per-tenant JSON map from configuration:
  NOTIFICATION_RECIPIENTS='{"hotel-1": {"manager": ["ops@hotel.com"],
                                        "admin": ["gm@hotel.com"],
                                        "supplier:acme": ["orders@acme.com"]}}'
Entries may be plain addresses or {"id": ..., "address": ...} objects.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod

import structlog

from alerts.transport import Recipient
from core.types import NotificationStage

logger = structlog.get_logger()

STAGE_ROLES = {
    NotificationStage.INITIAL: ("manager", "admin"),
    NotificationStage.ESCALATION: ("admin",),
}


def supplier_role(handle: str) -> str:
    return f"supplier:{handle}"


def roles_for_stage(stage: NotificationStage, supplier: str | None = None) -> tuple[str, ...]:
    if stage == NotificationStage.SUPPLIER:
        return (supplier_role(supplier),) if supplier else ()
    return STAGE_ROLES[stage]


class RecipientDirectory(ABC):
    @abstractmethod
    async def recipients_for(self, tenant_id: str, role: str) -> list[Recipient]:
        """Recipients holding ``role`` for the tenant."""

    async def recipients_for_stage(
        self, tenant_id: str, stage: NotificationStage, supplier: str | None = None
    ) -> list[Recipient]:
        """Union over the stage's roles, de-duplicated by recipient id."""
        seen: dict[str, Recipient] = {}
        for role in roles_for_stage(stage, supplier):
            for recipient in await self.recipients_for(tenant_id, role):
                seen.setdefault(recipient.id, recipient)
        return list(seen.values())


class StaticRecipientDirectory(RecipientDirectory):
    """In-memory directory: {tenant: {role: [Recipient, ...]}}."""

    def __init__(self, mapping: dict[str, dict[str, list[Recipient]]] | None = None):
        self._mapping = mapping or {}

    async def recipients_for(self, tenant_id: str, role: str) -> list[Recipient]:
        return list(self._mapping.get(tenant_id, {}).get(role, []))


class SettingsRecipientDirectory(StaticRecipientDirectory):
    """Directory parsed from the ``notification_recipients`` setting."""

    def __init__(self, raw: str):
        super().__init__(_parse_recipients(raw))


def _parse_recipients(raw: str) -> dict[str, dict[str, list[Recipient]]]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("recipients.invalid_json")
        return {}
    if not isinstance(payload, dict):
        return {}

    mapping: dict[str, dict[str, list[Recipient]]] = {}
    for tenant_id, roles in payload.items():
        if not isinstance(roles, dict):
            continue
        tenant_roles: dict[str, list[Recipient]] = {}
        for role, entries in roles.items():
            if not isinstance(entries, list):
                continue
            recipients = []
            for entry in entries:
                if isinstance(entry, str):
                    recipients.append(Recipient(id=entry, address=entry))
                elif isinstance(entry, dict) and entry.get("address"):
                    recipients.append(Recipient(id=str(entry.get("id") or entry["address"]), address=entry["address"]))
            tenant_roles[role] = recipients
        mapping[str(tenant_id)] = tenant_roles
    return mapping
