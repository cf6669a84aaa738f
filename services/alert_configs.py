"""
Alert configurations, one model per alert type.

An alert's stored ``config`` is only meaningful together with its
``alert_type``; parse_alert_config picks the model and rejects fields that
do not belong to it.
"""
import math
import operator
from typing import Dict, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from core.errors import ValidationError
from reporting.models import AlertType

THRESHOLD_CONDITIONS = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": lambda value, threshold: math.isclose(value, threshold, abs_tol=1e-9),
    "neq": lambda value, threshold: not math.isclose(value, threshold, abs_tol=1e-9),
}

CONDITION_LABELS = {
    "gt": "greater than",
    "gte": "greater than or equal to",
    "lt": "less than",
    "lte": "less than or equal to",
    "eq": "equal to",
    "neq": "not equal to",
}

PERIOD_LABELS = {
    "wow": "week-over-week",
    "mom": "month-over-month",
    "yoy": "year-over-year",
}


class _AlertConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ThresholdAlertConfig(_AlertConfig):
    metric: str = Field(min_length=1)
    condition: Literal["gt", "gte", "lt", "lte", "eq", "neq"]
    threshold: float


class TrendAlertConfig(_AlertConfig):
    metric: str = Field(min_length=1)
    change_percent: float = Field(alias="changePercent", ge=0)
    period: Literal["wow", "mom", "yoy"] = "wow"


class FreshnessAlertConfig(_AlertConfig):
    max_hours_stale: float = Field(alias="maxHoursStale", gt=0)
    platform_id: Optional[str] = Field(default=None, alias="platformId")


AlertConfig = Union[ThresholdAlertConfig, TrendAlertConfig, FreshnessAlertConfig]

ALERT_CONFIG_TYPES: Dict[AlertType, Type[_AlertConfig]] = {
    AlertType.METRIC_THRESHOLD: ThresholdAlertConfig,
    AlertType.TREND_DETECTION: TrendAlertConfig,
    AlertType.DATA_FRESHNESS: FreshnessAlertConfig,
}


def parse_alert_type(value) -> AlertType:
    try:
        return AlertType(value)
    except ValueError:
        valid = ", ".join(t.value for t in AlertType)
        raise ValidationError(f"Invalid alert type '{value}'. Must be one of: {valid}") from None


def parse_alert_config(alert_type, config) -> AlertConfig:
    alert_type = parse_alert_type(alert_type)
    if not isinstance(config, dict):
        raise ValidationError("Alert config is required")
    try:
        return ALERT_CONFIG_TYPES[alert_type].model_validate(config)
    except PydanticValidationError as e:
        raise ValidationError.from_pydantic(e, f"{alert_type.value} config") from e
