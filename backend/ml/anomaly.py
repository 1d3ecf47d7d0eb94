"""
Consumption Anomaly Detection — z-score of today's usage against the last 30 days.

Baseline is the 30 days immediately preceding today (today excluded),
zero-filled, with population standard deviation:

  z = (today − mean) / std

  |z| >= 3.0  → critical
  |z| >= 2.5  → high
  |z| >= 2.0  → medium
  otherwise   → not an anomaly

A flat baseline (std == 0) never produces an anomaly, and fewer than
7 baseline days is treated as not enough history to judge.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog

from core.types import Priority

logger = structlog.get_logger()

BASELINE_DAYS = 30
MIN_BASELINE_POINTS = 7

ANOMALY_Z_THRESHOLDS = (
    (3.0, Priority.CRITICAL),
    (2.5, Priority.HIGH),
    (2.0, Priority.MEDIUM),
)


def classify_anomaly_severity(z_score: float) -> Priority | None:
    """Severity bucket for |z|, or None below 2.0."""
    z = abs(z_score)
    for threshold, severity in ANOMALY_Z_THRESHOLDS:
        if z >= threshold:
            return severity
    return None


@dataclass(frozen=True)
class ConsumptionAnomaly:
    tenant_id: str
    item_id: str
    day: date
    today_consumption: float
    baseline_mean: float
    baseline_std: float
    z_score: float
    severity: Priority
    direction: str  # "spike" | "drop"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "item_id": self.item_id,
            "day": self.day.isoformat(),
            "today_consumption": self.today_consumption,
            "baseline_mean": round(self.baseline_mean, 3),
            "baseline_std": round(self.baseline_std, 3),
            "z_score": round(self.z_score, 3),
            "severity": self.severity.value,
            "direction": self.direction,
        }


def detect_consumption_anomaly(
    series: pd.Series,
    today: date,
    *,
    tenant_id: str = "",
    item_id: str = "",
) -> ConsumptionAnomaly | None:
    """Score today's consumption in a daily series indexed by date."""
    if series.empty:
        return None

    today_ts = pd.Timestamp(today)
    baseline_index = pd.date_range(end=today_ts - pd.Timedelta(days=1), periods=BASELINE_DAYS, freq="D")
    first_day = series.index.min()
    baseline = series.reindex(baseline_index, fill_value=0.0)
    baseline = baseline[baseline.index >= first_day]
    if len(baseline) < MIN_BASELINE_POINTS:
        return None

    values = baseline.to_numpy(dtype=float)
    mean = float(values.mean())
    std = float(values.std())
    if std == 0:
        return None

    today_value = float(series.get(today_ts, 0.0))
    z = (today_value - mean) / std
    severity = classify_anomaly_severity(z)
    if severity is None:
        return None

    return ConsumptionAnomaly(
        tenant_id=tenant_id,
        item_id=item_id,
        day=today,
        today_consumption=today_value,
        baseline_mean=mean,
        baseline_std=std,
        z_score=float(np.round(z, 6)),
        severity=severity,
        direction="spike" if today_value > mean else "drop",
    )


class AnomalyDetector:
    """Scans every active item of a tenant for consumption anomalies."""

    def __init__(self, forecaster, catalogue, clock):
        self._forecaster = forecaster
        self._catalogue = catalogue
        self._clock = clock

    async def detect(self, tenant_id: str) -> list[ConsumptionAnomaly]:
        started: datetime = self._clock.utcnow()
        today = started.date()
        logger.info("anomaly.detect_start", tenant_id=tenant_id)

        anomalies: list[ConsumptionAnomaly] = []
        items = await self._catalogue.active_items(tenant_id)
        for item in items:
            series = await self._forecaster.consumption_series(
                tenant_id, item.item_id, window_days=BASELINE_DAYS + 1
            )
            anomaly = detect_consumption_anomaly(series, today, tenant_id=tenant_id, item_id=item.item_id)
            if anomaly is not None:
                anomalies.append(anomaly)
                logger.warning("anomaly.detected", **anomaly.to_dict())

        logger.info(
            "anomaly.detect_complete",
            tenant_id=tenant_id,
            items_scanned=len(items),
            anomalies_found=len(anomalies),
            duration_ms=int((self._clock.utcnow() - started) / timedelta(milliseconds=1)),
        )
        return anomalies
