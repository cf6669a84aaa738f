"""
Metric aggregation over per-platform row collections.

Platform data is always shaped ``{platform_id: [row, ...]}`` where each row
is the raw uploaded dict for that platform.
"""
import asyncio
import logging
import math
import random
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from core.errors import ValidationError
from core.retry import with_retry_all
from reporting.schedule import utc_now

logger = logging.getLogger(__name__)

PlatformData = Dict[str, List[dict]]

# Ratios are averaged across rows, never summed
RATIO_METRICS = frozenset({"roas", "ctr", "cpc", "cpm", "conversion_rate"})

DATE_PRESETS = (
    "last_7_days", "last_14_days", "last_30_days", "last_90_days",
    "this_month", "last_month", "this_quarter", "last_quarter", "this_year",
)
_LAST_N_DAYS = {"last_7_days": 7, "last_14_days": 14, "last_30_days": 30, "last_90_days": 90}

FILTER_OPERATORS: Dict[str, Callable[[str, str], bool]] = {
    "equals": lambda value, target: value == target,
    "not_equals": lambda value, target: value != target,
    "contains": lambda value, target: target in value,
    "starts_with": lambda value, target: value.startswith(target),
}

CHART_PREVIEW_LIMIT = 20

_NUMBER_PREFIX = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")
_STRIP_CHARS = re.compile(r"[^0-9.\-]")


class ValueSource(str, Enum):
    ACTUAL = "actual"
    ESTIMATED = "estimated"


class ComparisonPeriod(str, Enum):
    WOW = "wow"
    MOM = "mom"
    YOY = "yoy"


@dataclass(frozen=True)
class PreviousValue:
    """A comparison-period value, tagged with whether it was measured or simulated."""
    value: float
    source: ValueSource

    @property
    def estimated(self) -> bool:
        return self.source == ValueSource.ESTIMATED


@dataclass
class MetricSnapshot:
    metric: str
    value: float
    previous: Optional[PreviousValue]
    trend: Optional[float]

    @property
    def estimated(self) -> bool:
        return self.previous is not None and self.previous.estimated


def coerce_number(value: Any) -> Optional[float]:
    """
    Numeric value of a raw cell, or None when it has none.
    "$1,234.50" -> 1234.5; "n/a" -> None; booleans are not numbers.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(value) else float(value)
    if isinstance(value, str):
        match = _NUMBER_PREFIX.match(_STRIP_CHARS.sub("", value))
        return float(match.group()) if match else None
    return None


def _as_comparison_period(period: Union[str, ComparisonPeriod]) -> ComparisonPeriod:
    try:
        return ComparisonPeriod(period)
    except ValueError:
        raise ValidationError(f"Unknown comparison period '{period}'") from None


def _shift_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # Feb 29 -> Feb 28
        return day.replace(year=day.year + years, day=28)


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


class MetricsService:
    def __init__(self, store=None, now: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._now = now or utc_now

    def today(self) -> date:
        return self._now().date()

    # ------------------------------------------------------------------
    # point-in-time values
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_metric_value(metric: Optional[str], platform_data: PlatformData) -> float:
        if not metric:
            return 0
        total = 0.0
        count = 0
        for rows in platform_data.values():
            for row in rows:
                number = coerce_number(row.get(metric))
                if number is None:
                    continue
                total += number
                count += 1
        if metric in RATIO_METRICS and count > 0:
            return total / count
        return total

    @staticmethod
    def calculate_trend(current: float, previous: Union[PreviousValue, float, None]) -> Optional[float]:
        """Percent change; None (undefined, not zero) when there is no usable baseline."""
        if isinstance(previous, PreviousValue):
            previous = previous.value
        if previous is None or previous == 0:
            return None
        return (current - previous) / previous * 100

    @staticmethod
    def format_value(value: Optional[float], fmt: Optional[str] = "number") -> str:
        if value is None:
            return "-"
        fmt = fmt or "number"
        if fmt == "currency":
            text = f"${abs(value):,.0f}"
            return f"-{text}" if round(value) < 0 else text
        if fmt == "percentage":
            return f"{value * 100:.1f}%"
        if fmt == "decimal":
            return f"{value:,.2f}"
        if fmt == "compact":
            for divisor, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
                if abs(value) >= divisor:
                    return f"{value / divisor:.1f}".rstrip("0").rstrip(".") + suffix
            return f"{value:.1f}".rstrip("0").rstrip(".")
        text = f"{value:,.3f}"
        return text.rstrip("0").rstrip(".") if "." in text else text

    # ------------------------------------------------------------------
    # comparison periods
    # ------------------------------------------------------------------

    @staticmethod
    def previous_period_dates(period: Union[str, ComparisonPeriod], today: date) -> Tuple[date, date]:
        """
        wow: the 7 days ending a week ago.
        mom: the whole previous calendar month.
        yoy: the 7 days ending a year ago.
        """
        period = _as_comparison_period(period)
        if period == ComparisonPeriod.MOM:
            end = today.replace(day=1) - timedelta(days=1)
            return end.replace(day=1), end
        if period == ComparisonPeriod.YOY:
            end = _shift_years(today, -1)
        else:
            end = today - timedelta(days=7)
        return end - timedelta(days=6), end

    @staticmethod
    def simulate_previous_value(current: float) -> PreviousValue:
        """Stand-in baseline when no history exists: 90-110% of the current value."""
        return PreviousValue(current * random.uniform(0.9, 1.1), ValueSource.ESTIMATED)

    async def calculate_previous_value(self, metric: str, platform_data: PlatformData,
                                       client_id: Optional[str] = None,
                                       comparison_period: Union[str, ComparisonPeriod] = "wow",
                                       date_field: str = "date") -> PreviousValue:
        current = self.calculate_metric_value(metric, platform_data)
        if not client_id or self.store is None:
            return self.simulate_previous_value(current)

        start, end = self.previous_period_dates(comparison_period, self.today())
        historical = await self.load_platform_data(client_id, list(platform_data.keys()), start, end, date_field)
        if historical:
            previous = self.calculate_metric_value(metric, historical)
            if previous != 0:
                return PreviousValue(previous, ValueSource.ACTUAL)

        logger.debug(f"[METRICS] No history for '{metric}' (client={client_id}, period={comparison_period}), "
                     f"using estimated baseline")
        return self.simulate_previous_value(current)

    async def snapshot(self, metric: str, platform_data: PlatformData, client_id: Optional[str] = None,
                       comparison_period: Union[str, ComparisonPeriod] = "wow",
                       date_field: str = "date") -> MetricSnapshot:
        value = self.calculate_metric_value(metric, platform_data)
        previous = await self.calculate_previous_value(metric, platform_data, client_id, comparison_period, date_field)
        return MetricSnapshot(metric=metric, value=value, previous=previous,
                              trend=self.calculate_trend(value, previous))

    async def get_kpi_preview(self, platform_data: PlatformData, metric: Optional[str],
                              client_id: Optional[str] = None,
                              comparison_period: Union[str, ComparisonPeriod] = "wow",
                              date_field: str = "date") -> Dict[str, Any]:
        if not metric:
            return {"value": 0, "previous_value": None, "previous_value_source": None, "trend": None}
        snap = await self.snapshot(metric, platform_data, client_id, comparison_period, date_field)
        return {
            "value": snap.value,
            "previous_value": snap.previous.value,
            "previous_value_source": snap.previous.source.value,
            "trend": snap.trend,
        }

    # ------------------------------------------------------------------
    # filtering & charts
    # ------------------------------------------------------------------

    @staticmethod
    def apply_filters(platform_data: PlatformData, filters: Optional[List[dict]]) -> PlatformData:
        """AND of all filters, case-insensitive. Rows missing a filtered field are dropped."""
        if not filters:
            return platform_data
        for f in filters:
            if f.get("operator") not in FILTER_OPERATORS:
                raise ValidationError(f"Unknown filter operator '{f.get('operator')}'")

        def _keep(row: dict) -> bool:
            for f in filters:
                value = row.get(f.get("field"))
                if value is None:
                    return False
                if not FILTER_OPERATORS[f["operator"]](str(value).lower(), str(f.get("value")).lower()):
                    return False
            return True

        return {platform_id: [row for row in rows if _keep(row)] for platform_id, rows in platform_data.items()}

    @staticmethod
    def _group_by(platform_data: PlatformData, dimension: str, metrics: Iterable[str]) -> List[dict]:
        metrics = list(metrics)
        groups: Dict[Any, dict] = {}
        for platform_id, rows in platform_data.items():
            for row in rows:
                key = row.get(dimension) or platform_id
                bucket = groups.get(key)
                if bucket is None:
                    bucket = {dimension: key}
                    bucket.update({m: 0 for m in metrics})
                    groups[key] = bucket
                for m in metrics:
                    bucket[m] += coerce_number(row.get(m)) or 0
        return list(groups.values())

    def aggregate_chart_data(self, viz: dict, platform_data: PlatformData) -> List[dict]:
        config = viz.get("config") or {}
        x_axis, y_axis = config.get("xAxis"), config.get("yAxis")
        if not x_axis or not y_axis:
            return []
        return self._group_by(platform_data, x_axis, y_axis if isinstance(y_axis, list) else [y_axis])

    def generate_chart_preview(self, platform_data: PlatformData, chart_type: str,
                               metrics: Optional[List[str]] = None,
                               dimensions: Optional[List[str]] = None) -> Dict[str, Any]:
        metrics = list(metrics or [])
        x_axis_key = dimensions[0] if dimensions else "name"
        points = self._group_by(platform_data, x_axis_key, metrics)

        if chart_type == "line":
            points.sort(key=lambda p: str(p[x_axis_key]))
        elif metrics:
            points.sort(key=lambda p: p[metrics[0]], reverse=True)
        points = points[:CHART_PREVIEW_LIMIT]

        if chart_type == "pie":
            first = metrics[0] if metrics else None
            return {
                "chart_data": [{"name": p[x_axis_key], "value": p.get(first, 0) if first else 0} for p in points],
                "name_key": "name",
                "value_key": "value",
            }
        return {"chart_data": points, "x_axis_key": x_axis_key, "y_axis_keys": metrics}

    # ------------------------------------------------------------------
    # date ranges & loading
    # ------------------------------------------------------------------

    def calculate_date_range(self, preset: Optional[str] = None, custom_start: Optional[str] = None,
                             custom_end: Optional[str] = None) -> Tuple[Union[date, str], Union[date, str]]:
        """Inclusive (start, end) for a named preset; ``custom`` bounds are returned as given."""
        today = self.today()
        preset = preset or "last_30_days"

        if preset == "custom":
            if not custom_start or not custom_end:
                raise ValidationError("Custom date range requires both start and end dates")
            return custom_start, custom_end
        if preset in _LAST_N_DAYS:
            return today - timedelta(days=_LAST_N_DAYS[preset]), today
        if preset == "this_month":
            return today.replace(day=1), today
        if preset == "last_month":
            end = today.replace(day=1) - timedelta(days=1)
            return end.replace(day=1), end
        if preset == "this_quarter":
            return _quarter_start(today), today
        if preset == "last_quarter":
            end = _quarter_start(today) - timedelta(days=1)
            return _quarter_start(end), end
        if preset == "this_year":
            return date(today.year, 1, 1), today
        raise ValidationError(f"Unknown date range preset '{preset}'")

    async def load_platform_data(self, client_id: str, platform_ids: Iterable[str],
                                 start: Union[date, str, None] = None, end: Union[date, str, None] = None,
                                 date_field: str = "date") -> PlatformData:
        """Fetch every platform concurrently; a platform that fails contributes no rows."""
        if self.store is None:
            return {}

        platform_ids = list(platform_ids)
        results = await with_retry_all(
            [
                (lambda platform_id=platform_id: asyncio.to_thread(
                    self.store.get_platform_data, client_id, platform_id, start, end, date_field))
                for platform_id in platform_ids
            ],
            operation_name=f"load_platform_data[{client_id}]",
        )

        data = {}
        for platform_id, rows in zip(platform_ids, results):
            if isinstance(rows, dict) and "error" in rows:
                logger.warning(f"[METRICS] Failed to load {platform_id} data for client {client_id}: {rows['error']}")
                continue
            if rows:
                data[platform_id] = rows
        return data
