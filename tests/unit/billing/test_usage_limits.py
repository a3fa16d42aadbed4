from uuid import uuid4

import pytest
from sqlalchemy import text

from ledgerline.models.pricing import PlanLimits
from ledgerline.modules.billing.domain.usage import ResourceUsage, SqlUsageProvider, find_limit_violations


def test_over_limit_dimension_is_reported_by_label():
    violations = find_limit_violations(ResourceUsage(users=6), PlanLimits(max_users=5))
    assert violations == ["Users: 6 exceeds limit of 5"]


def test_all_violations_are_listed():
    usage = ResourceUsage(users=6, flows=12, contacts=10)
    limits = PlanLimits(max_users=5, max_flows=10, max_contacts=100)
    violations = find_limit_violations(usage, limits)
    assert len(violations) == 2
    assert any(v.startswith("Flows") for v in violations)


def test_unlimited_and_exact_fit_pass():
    usage = ResourceUsage(users=5, contacts=1_000_000)
    assert find_limit_violations(usage, PlanLimits(max_users=5)) == []


@pytest.mark.asyncio
async def test_sql_usage_counts_only_configured_tables(db):
    tenant_id = uuid4()
    await db.execute(text("CREATE TABLE team_members (id INTEGER PRIMARY KEY, tenant_id VARCHAR(36))"))
    for owner in (tenant_id, tenant_id, uuid4()):
        await db.execute(text("INSERT INTO team_members (tenant_id) VALUES (:t)"), {"t": str(owner)})
    await db.commit()

    usage = await SqlUsageProvider(db, tables={"users": "team_members"}).get_usage(tenant_id)

    assert usage.users == 2
    assert usage.contacts == 0
