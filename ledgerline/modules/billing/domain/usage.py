"""
Tenant resource usage, checked against plan limits before a downgrade.
"""

from dataclasses import dataclass, fields
from typing import Protocol
from uuid import UUID

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerline.models.pricing import PlanLimits
from ledgerline.shared.core.config import get_settings

logger = structlog.get_logger()

# Dimension -> (label used in messages, limit field on PlanLimits)
QUOTA_DIMENSIONS = {
    "contacts": ("Contacts", "max_contacts"),
    "users": ("Users", "max_users"),
    "campaigns": ("Campaigns", "max_campaigns"),
    "conversations": ("Conversations", "max_conversations"),
    "flows": ("Flows", "max_flows"),
    "automations": ("Automations", "max_automations"),
    "connections": ("Connections", "max_connections"),
}


@dataclass(frozen=True)
class ResourceUsage:
    contacts: int = 0
    users: int = 0
    campaigns: int = 0
    conversations: int = 0
    flows: int = 0
    automations: int = 0
    connections: int = 0


class UsageProvider(Protocol):
    async def get_usage(self, tenant_id: UUID) -> ResourceUsage: ...


def find_limit_violations(usage: ResourceUsage, limits: PlanLimits) -> list[str]:
    """
    Checks every quota dimension and returns all violations, e.g.
    ["Users: 6 exceeds limit of 5", "Flows: 12 exceeds limit of 10"].
    """
    violations = []
    for dimension, (label, limit_field) in QUOTA_DIMENSIONS.items():
        limit = getattr(limits, limit_field)
        current = getattr(usage, dimension)
        if limit is not None and current > limit:
            violations.append(f"{label}: {current} exceeds limit of {limit}")
    return violations


class SqlUsageProvider:
    """Counts tenant-owned rows in the tables configured by USAGE_TABLES."""

    def __init__(self, db: AsyncSession, tables: dict[str, str] | None = None):
        self.db = db
        self.tables = tables if tables is not None else get_settings().USAGE_TABLES

    async def get_usage(self, tenant_id: UUID) -> ResourceUsage:
        counts = {}
        for field in fields(ResourceUsage):
            table = self.tables.get(field.name)
            if not table:
                counts[field.name] = 0
                continue
            # Table names come from settings, never from request input
            result = await self.db.execute(
                text(f"SELECT COUNT(*) FROM {table} WHERE tenant_id = :tenant_id"),
                {"tenant_id": str(tenant_id)},
            )
            counts[field.name] = int(result.scalar() or 0)

        logger.debug("tenant_usage_counted", tenant_id=str(tenant_id), **counts)
        return ResourceUsage(**counts)
