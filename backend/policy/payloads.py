"""
Kind-specific policy payloads.

Each PolicyKind has one pydantic model; ``validate_payload`` is the
boundary where loose JSON from settings screens becomes a typed payload.
Everything past this point (hashing, storage, capacity math) works on
validated data only.
"""

from __future__ import annotations

import calendar
import math
from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.errors import PolicyPayloadError

MONTH_NAMES = tuple(name.lower() for name in calendar.month_name[1:])
WEEKDAY_NAMES = tuple(name.lower() for name in calendar.day_name)
_HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class PolicyKind(str, Enum):
    """Policy families versioned by the store."""

    SLA_MARGIN = "sla_margin"
    RISK_THRESHOLD = "risk_threshold"
    HUB_CAPACITY = "hub_capacity"


class PolicyState(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    SCHEDULED = "scheduled"
    ARCHIVED = "archived"


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ─── SLA & Margin ──────────────────────────────────────────────────────────


class SLATargets(_Payload):
    classification_hours: float = Field(24, gt=0, alias="timeToClassify")
    urban_pickup_max_hours: float = Field(12, gt=0, alias="urbanWGMaxHours")
    intercity_pickup_max_hours: float = Field(48, gt=0, alias="interCityWGMaxHours")
    tier2_hub_max_hours: float = Field(48, gt=0, alias="tier2MaxHours")
    tier3_hub_max_hours: float = Field(72, gt=0, alias="tier3MaxHours")
    tier3_qa_buffer_hours: float = Field(4, ge=0, alias="tier3QABuffer")
    wg_delivery_max_hours: float = Field(24, gt=0, alias="wgFinalDeliveryMaxHours")
    risk_buffer_hours: float = Field(6, ge=0, alias="riskBufferHours")
    breach_escalation_minutes: int = Field(30, ge=0, alias="breachEscalationMinutes")


class MarginThresholds(_Payload):
    minimum_margin: float = Field(10.0, ge=0, le=100, alias="minimumMargin")
    target_margin: float = Field(25.0, ge=0, le=100, alias="targetMargin")
    component_margins: dict[str, float] = Field(default_factory=dict, alias="components")
    variance_tolerance_percent: float = Field(5.0, ge=0, le=100, alias="tolerancePercent")
    base_currency: str = Field("EUR", min_length=3, max_length=3, alias="baseCurrency")
    include_vat: bool = Field(False, alias="includeVAT")

    @model_validator(mode="after")
    def _minimum_below_target(self) -> "MarginThresholds":
        if self.minimum_margin > self.target_margin:
            raise ValueError("minimum margin cannot exceed target margin")
        return self


class SLAMarginPayload(_Payload):
    name: str = Field(..., min_length=1)
    sla_targets: SLATargets
    margin_thresholds: MarginThresholds


# ─── Risk thresholds ───────────────────────────────────────────────────────


class ValueBand(_Payload):
    min_value: float = Field(..., ge=0, alias="minValue")
    max_value: float | None = Field(None, alias="maxValue")
    recommended_tier: str = Field(..., pattern=r"^T[123]$", alias="recommendedTier")
    wg_recommended: bool = Field(False, alias="wgRecommended")

    @model_validator(mode="after")
    def _max_above_min(self) -> "ValueBand":
        if self.max_value is not None and self.max_value <= self.min_value:
            raise ValueError("maximum value must be greater than minimum value")
        return self


class RiskWeights(_Payload):
    time: float = Field(0.4, ge=0)
    cost: float = Field(0.3, ge=0)
    risk: float = Field(0.3, ge=0)

    @model_validator(mode="after")
    def _not_all_zero(self) -> "RiskWeights":
        if self.time + self.cost + self.risk == 0:
            raise ValueError("risk weights cannot all be zero")
        return self


class RiskThresholdPayload(_Payload):
    name: str = Field(..., min_length=1)
    value_bands: list[ValueBand] = Field(default_factory=list)
    fragility_rules: list[dict[str, Any]] = Field(default_factory=list)
    brand_overrides: list[dict[str, Any]] = Field(default_factory=list)
    lane_risks: list[dict[str, Any]] = Field(default_factory=list)
    inventory_thresholds: dict[str, Any] = Field(default_factory=dict)
    risk_weights: RiskWeights = Field(default_factory=RiskWeights)
    risk_components: dict[str, float] = Field(default_factory=dict)
    security_defaults: dict[str, Any] = Field(default_factory=dict)
    incident_rules: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("risk_components")
    @classmethod
    def _components_in_unit_range(cls, value: dict[str, float]) -> dict[str, float]:
        for key, weight in value.items():
            if weight < 0 or weight > 1:
                raise ValueError(f"risk component {key} must be between 0 and 1")
        return value

    @field_validator("inventory_thresholds")
    @classmethod
    def _inventory_thresholds_sane(cls, value: dict[str, Any]) -> dict[str, Any]:
        for stock in ("tags", "nfc"):
            section = value.get(stock) or {}
            low_stock = section.get("lowStockQty")
            if low_stock is not None and low_stock <= 0:
                raise ValueError(f"{stock} low stock threshold must be greater than 0")
        lot_failure = (value.get("nfc") or {}).get("lotFailureQuarantineThreshold")
        if lot_failure is not None and not 0 <= lot_failure <= 100:
            raise ValueError("NFC lot failure threshold must be between 0 and 100")
        return value


# ─── Hub capacity profile ──────────────────────────────────────────────────


class WorkingHours(_Payload):
    start: str = Field("08:00", pattern=_HHMM_PATTERN)
    end: str = Field("19:00", pattern=_HHMM_PATTERN)

    @model_validator(mode="after")
    def _start_before_end(self) -> "WorkingHours":
        if self.start >= self.end:
            raise ValueError("working hours must start before they end")
        return self


class CapacityProfilePayload(_Payload):
    """Per-hub lane capacities and the multipliers applied to them."""

    auth_capacity: int = Field(..., ge=0)
    sewing_capacity: int = Field(..., ge=0)
    qa_capacity: int = Field(..., ge=0)
    qa_headcount: int = Field(4, ge=0)
    qa_shift_minutes: int = Field(480, ge=0, le=24 * 60)
    seasonality_multipliers: dict[str, float] = Field(default_factory=dict)
    overbooking_percent: float = Field(10.0, ge=0, le=30)
    rush_bucket_percent: float = Field(15.0, ge=0, le=20)
    working_days: list[str] = Field(default_factory=lambda: list(WEEKDAY_NAMES[:6]))
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    back_to_back_cutoff: str = Field("17:00", pattern=_HHMM_PATTERN)

    @field_validator("seasonality_multipliers")
    @classmethod
    def _known_months(cls, value: dict[str, float]) -> dict[str, float]:
        normalized = {}
        for month, multiplier in value.items():
            key = str(month).strip().lower()
            if key not in MONTH_NAMES:
                raise ValueError(f"unknown month in seasonality multipliers: {month}")
            if multiplier <= 0:
                raise ValueError(f"seasonality multiplier for {key} must be positive")
            normalized[key] = float(multiplier)
        return normalized

    @field_validator("working_days")
    @classmethod
    def _known_weekdays(cls, value: list[str]) -> list[str]:
        days = [str(day).strip().lower() for day in value]
        unknown = sorted(set(days) - set(WEEKDAY_NAMES))
        if unknown:
            raise ValueError(f"unknown working days: {unknown}")
        return days

    def base_capacity(self, lane: str) -> int:
        return {
            "auth": self.auth_capacity,
            "sewing": self.sewing_capacity,
            "qa": self.qa_capacity,
        }[lane]

    def seasonality_for(self, day: date) -> float:
        return self.seasonality_multipliers.get(MONTH_NAMES[day.month - 1], 1.0)

    def effective_capacity(self, lane: str, day: date) -> int:
        raw = self.base_capacity(lane) * self.seasonality_for(day) * (1 + self.overbooking_percent / 100)
        # Guard against 10 * 1.1 landing on 10.999999 before flooring.
        return int(math.floor(round(raw, 6)))

    def rush_allowance(self, lane: str) -> int:
        return int(math.ceil(round(self.base_capacity(lane) * self.rush_bucket_percent / 100, 6)))

    @property
    def qa_capacity_minutes(self) -> int:
        return self.qa_headcount * self.qa_shift_minutes


PAYLOAD_MODELS: dict[PolicyKind, type[_Payload]] = {
    PolicyKind.SLA_MARGIN: SLAMarginPayload,
    PolicyKind.RISK_THRESHOLD: RiskThresholdPayload,
    PolicyKind.HUB_CAPACITY: CapacityProfilePayload,
}


def parse_kind(kind: PolicyKind | str) -> PolicyKind:
    try:
        return PolicyKind(kind)
    except ValueError as exc:
        raise PolicyPayloadError(f"Unknown policy kind: {kind}", kind=str(kind)) from exc


def validate_payload(kind: PolicyKind | str, raw: dict[str, Any] | BaseModel) -> _Payload:
    """Validate ``raw`` against the model for ``kind``."""
    kind = parse_kind(kind)
    model = PAYLOAD_MODELS[kind]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump(by_alias=False)
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise PolicyPayloadError(
            f"Invalid {kind.value} payload",
            kind=kind.value,
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in exc.errors()],
        ) from exc


def payload_to_document(payload: _Payload) -> dict[str, Any]:
    """JSON-ready dict stored in ``policy_versions.payload`` and hashed."""
    return payload.model_dump(mode="json", by_alias=False)


def load_capacity_profile(document: dict[str, Any]) -> CapacityProfilePayload:
    return CapacityProfilePayload.model_validate(document)
