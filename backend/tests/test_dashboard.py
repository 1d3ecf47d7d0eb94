import pytest

from conftest import TENANT_ID, consume, register, restock
from inventory.engine import recommendations


def test_recommendations_empty_when_nothing_to_report():
    assert recommendations({}, [], []) == []


@pytest.mark.asyncio
async def test_dashboard_summarises_tenant(engine):
    await register(engine, "towels", reorder_point=10)
    await register(engine, "soap", reorder_point=5)
    await restock(engine, "soap", 50)
    await restock(engine, "towels", 20)
    await consume(engine, "towels", 12)
    await engine.snapshot(TENANT_ID)

    dashboard = await engine.dashboard(TENANT_ID)

    assert dashboard["key_metrics"]["low_stock_count"] == 1
    assert dashboard["key_metrics"]["out_of_stock_count"] == 0
    assert dashboard["alerts"]["open"] == 1
    assert sum(dashboard["alerts"]["by_priority"].values()) == 1
    assert [f["item_id"] for f in dashboard["forecasting"]] == ["towels"]
    assert dashboard["forecasting"][0]["risk_level"] == "critical"
    assert dashboard["anomalies"] == []
    assert {r["type"] for r in dashboard["recommendations"]} == {"stock_management", "demand_forecasting"}
    assert dashboard["reorder"]["items_with_auto_reorder"] == 2
    assert dashboard["reorder"]["items_needing_reorder"] == 1
    assert [(h["item_id"], h["state"]) for h in dashboard["reorder"]["recent_history"]] == [("towels", "resolved")]
    assert [t["item_id"] for t in dashboard["trends"]["items"]] == ["towels"]
    assert dashboard["trends"]["categories"][0]["category"] == "general"
    assert dashboard["trends"]["categories"][0]["item_count"] == 1
    assert [i["item_id"] for i in dashboard["top_items"]["top_by_consumption"]] == ["towels", "soap"]
    assert [i["item_id"] for i in dashboard["top_items"]["top_by_value"]] == ["soap", "towels"]


@pytest.mark.asyncio
async def test_dashboard_for_empty_tenant(engine):
    dashboard = await engine.dashboard(TENANT_ID)

    assert dashboard["key_metrics"] == {}
    assert dashboard["alerts"]["open"] == 0
    assert dashboard["trends"] == {"categories": [], "items": []}
    assert dashboard["top_items"]["most_volatile"] == []
