"""
Tests for demand forecasting.

Covers:
  - t-value lookup, trend classification, seasonal indices
  - Confidence ceilings and margin of error
  - Suggested order quantity and risk levels
  - Daily series construction and the forecast container
  - Per-item consumption trends and their per-category rollup
"""

import math
from datetime import date, datetime, timedelta
from types import SimpleNamespace

import pandas as pd
import pytest

from conftest import START, TENANT_ID, consume, register, restock
from core.errors import EngineError, ErrorKind
from core.types import EntryType, Priority, Trend
from inventory.ledger import NewEntry
from ml.forecast import (
    UNCATEGORIZED,
    ItemTrend,
    _risk_level,
    build_forecast,
    category_trends,
    classify_trend,
    confidence_ceiling,
    daily_consumption_series,
    margin_of_error,
    seasonal_indices,
    suggested_order_quantity,
    t_value,
)

GENERATED_AT = datetime(2026, 3, 15, 12, 0, 0)


def _series(values, end=date(2026, 3, 15)):
    index = pd.date_range(end=pd.Timestamp(end), periods=len(values), freq="D")
    return pd.Series([float(v) for v in values], index=index)


def _forecast(series, on_hand=12, **overrides):
    params = dict(
        tenant_id=TENANT_ID,
        item_id="towels",
        series=series,
        on_hand=on_hand,
        generated_at=GENERATED_AT,
        horizon_days=14,
        confidence_level=0.95,
        lead_time_days=7,
        reorder_quantity=20,
        safety_days=3,
    )
    params.update(overrides)
    return build_forecast(**params)


# ── Statistics helpers ──────────────────────────────────────────────────


class TestStatistics:
    def test_t_value_uses_closest_row_and_column(self):
        assert t_value(0.95, 29) == 2.042
        assert t_value(0.95, 2) == 2.571
        assert t_value(0.93, 12) == 2.228
        assert t_value(0.99, 100) == 2.750

    @pytest.mark.parametrize(
        "values, expected",
        [
            ([1, 1, 1, 2, 2, 2], Trend.INCREASING),
            ([2, 2, 2, 1, 1, 1], Trend.DECREASING),
            ([4, 4, 4, 4, 4, 4], Trend.STABLE),
            ([1, 1, 10, 10, 1, 1], Trend.VOLATILE),
            ([0, 0, 0, 0, 1, 1], Trend.INCREASING),
            ([5, 9], Trend.STABLE),
        ],
    )
    def test_classify_trend(self, values, expected):
        assert classify_trend(values) == expected

    def test_seasonal_indices_need_twelve_points(self):
        series = pd.Series(
            [2.0] * 31 + [4.0] * 9,
            index=pd.date_range("2026-03-01", periods=40, freq="D"),
        )
        indices = seasonal_indices(series)
        assert indices[3] == pytest.approx(2.0 / 2.45, abs=1e-4)
        assert indices[4] is None

    def test_confidence_ceiling_grows_with_history(self):
        assert [confidence_ceiling(d) for d in (3, 7, 29, 30, 90)] == [60, 75, 75, 85, 85]

    def test_margin_of_error(self):
        assert margin_of_error(4.0, 10, 0.95, 31) == pytest.approx(2.042 * math.sqrt(0.4) * 10)
        assert margin_of_error(4.0, 0, 0.95, 31) == 0.0

    def test_suggested_quantity_floors_at_reorder_quantity(self):
        assert suggested_order_quantity(4.0, 12, 7, 3, 20) == 40
        assert suggested_order_quantity(2.0, 100, 7, 3, 20) == 20

    @pytest.mark.parametrize(
        "days_of_stock, lower, expected",
        [
            (3.0, 10.0, Priority.CRITICAL),
            (9.0, 10.0, Priority.HIGH),
            (30.0, 0.0, Priority.HIGH),
            (15.0, 10.0, Priority.MEDIUM),
            (25.0, 10.0, Priority.LOW),
            (None, 10.0, Priority.LOW),
        ],
    )
    def test_risk_level(self, days_of_stock, lower, expected):
        assert _risk_level(days_of_stock, 7, 3, lower) == expected


# ── Series ─────────────────────────────────────────────────────────────


class TestDailySeries:
    def _entry(self, at, quantity, entry_type="consumption"):
        return SimpleNamespace(recorded_at=at, quantity=quantity, entry_type=entry_type)

    def test_zero_fills_from_first_consumption_day(self):
        entries = [
            self._entry(datetime(2026, 3, 1, 9), -2),
            self._entry(datetime(2026, 3, 1, 17), -3),
            self._entry(datetime(2026, 3, 2, 9), 40, entry_type="restock"),
            self._entry(datetime(2026, 3, 3, 8), -4),
        ]
        series = daily_consumption_series(entries, end=date(2026, 3, 4))
        assert list(series.values) == [5.0, 0.0, 4.0, 0.0]
        assert series.index[0] == pd.Timestamp("2026-03-01")

    def test_empty_without_consumption(self):
        entries = [self._entry(datetime(2026, 3, 1, 9), 10, entry_type="restock")]
        assert daily_consumption_series(entries, end=date(2026, 3, 4)).empty


# ── Forecast ───────────────────────────────────────────────────────────


class TestBuildForecast:
    def test_no_history_is_an_error(self):
        with pytest.raises(EngineError) as exc:
            _forecast(pd.Series(dtype=float))
        assert exc.value.kind == ErrorKind.INSUFFICIENT_HISTORY

    def test_steady_demand(self):
        forecast = _forecast(_series([4] * 30))

        assert forecast.history_days == 30
        assert forecast.seasonal_multiplier == 1.0
        assert forecast.projected_daily_demand == pytest.approx(4.0)
        assert forecast.margin_of_error == 0.0
        assert forecast.days_of_stock == pytest.approx(3.0)
        assert forecast.stockout_date == date(2026, 3, 18)
        assert forecast.imminent_stockout
        assert forecast.risk_level == Priority.CRITICAL
        assert forecast.confidence == 85
        assert forecast.trend == Trend.STABLE
        assert forecast.suggested_order_quantity == 40
        assert forecast.projected_on_hand(2) == pytest.approx(4.0)
        assert forecast.projected_on_hand(14) == 0.0

    def test_zero_demand_has_no_stockout(self):
        forecast = _forecast(_series([0] * 10), on_hand=50)
        assert forecast.days_of_stock is None
        assert forecast.stockout_date is None
        assert not forecast.imminent_stockout
        assert forecast.to_dict()["days_of_stock"] is None

    def test_interval_bounds_are_clamped(self):
        forecast = _forecast(_series([1, 7] * 10), on_hand=200)
        data = forecast.to_dict()
        interval = data["confidence_interval"]
        assert interval["lower_bound"] <= data["projected_on_hand"] <= interval["upper_bound"]
        assert interval["lower_bound"] >= 0

    def test_horizon_must_be_positive(self):
        with pytest.raises(ValueError):
            _forecast(_series([4] * 10), horizon_days=0)


class TestForecaster:
    @pytest.mark.asyncio
    async def test_without_consumption(self, engine):
        await register(engine)
        with pytest.raises(EngineError) as exc:
            await engine.forecast(TENANT_ID, "towels")
        assert exc.value.kind == ErrorKind.INSUFFICIENT_HISTORY

    @pytest.mark.asyncio
    async def test_unknown_item(self, engine):
        with pytest.raises(EngineError) as exc:
            await engine.forecast(TENANT_ID, "ghost")
        assert exc.value.kind == ErrorKind.UNKNOWN_ITEM

    @pytest.mark.asyncio
    async def test_policy_in_force_at_window_start(self, engine, clock):
        await register(engine, reorder_point=10)
        clock.advance(days=100)
        await engine.catalogue.update_policy(TENANT_ID, "towels", reorder_point=12)
        await restock(engine, "towels", 50)
        await consume(engine, "towels", 2)

        forecast = await engine.forecast(TENANT_ID, "towels")
        assert forecast.policy_in_force["reorder_point"] == 10
        assert forecast.on_hand == 48


# ── Trend analysis ──────────────────────────────────────────────────────


def _trend(item_id, category, trend, volatility, avg=1.0):
    return ItemTrend(item_id, item_id.title(), category, trend, volatility, avg, 10)


class TestCategoryTrends:
    def test_rolls_items_up_per_category(self):
        rollup = category_trends(
            [
                _trend("sheets", "linen", Trend.INCREASING, 0.5),
                _trend("towels", "linen", Trend.STABLE, 0.1),
                _trend("soap", UNCATEGORIZED, Trend.VOLATILE, 0.9),
            ]
        )
        assert [c["category"] for c in rollup] == ["linen", UNCATEGORIZED]
        linen = rollup[0]
        assert linen["item_count"] == 2
        assert linen["avg_volatility"] == 0.3
        assert linen["trend_distribution"] == {"increasing": 1, "decreasing": 0, "volatile": 0, "stable": 1}
        assert rollup[1]["trend_distribution"]["volatile"] == 1

    def test_empty(self):
        assert category_trends([]) == []


class TestTrendAnalysis:
    @pytest.mark.asyncio
    async def test_classifies_recent_consumption(self, engine):
        await register(engine, "towels", category="linen", reorder_point=5, max_stock=1000)
        await register(engine, "sheets", category="linen", reorder_point=5, max_stock=1000)
        await register(engine, "soap", reorder_point=5)
        for item_id in ("towels", "sheets"):
            await engine.append(
                NewEntry(TENANT_ID, item_id, EntryType.RESTOCK, 500, timestamp=START - timedelta(days=20))
            )

        rising = [1, 1, 1, 2, 2, 2, 5, 5, 5, 5]
        for days_ago, quantity in zip(range(9, -1, -1), rising):
            when = START - timedelta(days=days_ago)
            await engine.append(NewEntry(TENANT_ID, "towels", EntryType.CONSUMPTION, -quantity, timestamp=when))
            await engine.append(NewEntry(TENANT_ID, "sheets", EntryType.CONSUMPTION, -2, timestamp=when))
        await engine.scheduler.wait_idle()

        trends = await engine.trend_analysis(TENANT_ID)
        assert [t.item_id for t in trends] == ["towels", "sheets"]
        assert trends[0].trend == Trend.INCREASING
        assert trends[0].avg_daily_consumption == pytest.approx(2.9)
        assert trends[0].history_days == 10
        assert trends[1].trend == Trend.STABLE
        assert trends[1].volatility == 0.0

        rollup = category_trends(trends)
        assert rollup == [
            {
                "category": "linen",
                "trend_distribution": {"increasing": 1, "decreasing": 0, "volatile": 0, "stable": 1},
                "item_count": 2,
                "avg_volatility": round(trends[0].volatility / 2, 3),
            }
        ]

    @pytest.mark.asyncio
    async def test_period_bounds_the_history(self, engine, clock):
        await register(engine, reorder_point=5)
        await restock(engine, "towels", 50)
        await consume(engine, "towels", 4)

        clock.advance(days=10)
        assert [t.history_days for t in await engine.trend_analysis(TENANT_ID)] == [11]
        assert await engine.trend_analysis(TENANT_ID, period_days=5) == []
