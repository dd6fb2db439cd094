"""
Tests for kind-specific policy payload validation and capacity math.
"""

from datetime import date

import pytest

from core.errors import PolicyPayloadError
from policy.payloads import (
    CapacityProfilePayload,
    PolicyKind,
    SLAMarginPayload,
    parse_kind,
    payload_to_document,
    validate_payload,
)


class TestPayloadValidation:
    def test_sla_payload_accepts_camel_case_aliases(self, sla_payload):
        model = validate_payload("sla_margin", sla_payload())
        assert isinstance(model, SLAMarginPayload)
        assert model.sla_targets.tier2_hub_max_hours == 48
        assert model.margin_thresholds.component_margins["sewing"] == 20

    def test_minimum_margin_above_target_rejected(self, sla_payload):
        bad = sla_payload(margin_thresholds={"minimumMargin": 30, "targetMargin": 20})
        with pytest.raises(PolicyPayloadError) as exc_info:
            validate_payload(PolicyKind.SLA_MARGIN, bad)
        assert exc_info.value.code == "INVALID_PAYLOAD"
        assert exc_info.value.details["errors"]

    def test_risk_value_band_max_must_exceed_min(self):
        with pytest.raises(PolicyPayloadError):
            validate_payload(
                "risk_threshold",
                {"name": "Risk", "value_bands": [{"minValue": 500, "maxValue": 100, "recommendedTier": "T2"}]},
            )

    def test_risk_weights_cannot_all_be_zero(self):
        with pytest.raises(PolicyPayloadError):
            validate_payload("risk_threshold", {"name": "Risk", "risk_weights": {"time": 0, "cost": 0, "risk": 0}})

    def test_risk_components_unit_range(self):
        with pytest.raises(PolicyPayloadError):
            validate_payload("risk_threshold", {"name": "Risk", "risk_components": {"fragility": 1.5}})

    def test_nfc_lot_failure_threshold_range(self):
        with pytest.raises(PolicyPayloadError):
            validate_payload(
                "risk_threshold",
                {"name": "Risk", "inventory_thresholds": {"nfc": {"lotFailureQuarantineThreshold": 150}}},
            )

    def test_capacity_overbooking_capped(self, profile_payload):
        with pytest.raises(PolicyPayloadError):
            validate_payload("hub_capacity", profile_payload(overbooking_percent=45))

    def test_capacity_rush_bucket_capped(self, profile_payload):
        with pytest.raises(PolicyPayloadError):
            validate_payload("hub_capacity", profile_payload(rush_bucket_percent=25))

    def test_capacity_unknown_month_rejected(self, profile_payload):
        with pytest.raises(PolicyPayloadError):
            validate_payload("hub_capacity", profile_payload(seasonality_multipliers={"smarch": 1.2}))

    def test_working_hours_must_be_ordered(self, profile_payload):
        with pytest.raises(PolicyPayloadError):
            validate_payload("hub_capacity", profile_payload(working_hours={"start": "18:00", "end": "08:00"}))

    def test_unknown_kind_rejected(self):
        with pytest.raises(PolicyPayloadError):
            parse_kind("pricing")

    def test_document_uses_field_names(self, sla_payload):
        document = payload_to_document(validate_payload("sla_margin", sla_payload()))
        assert document["sla_targets"]["tier2_hub_max_hours"] == 48
        assert "tier2MaxHours" not in document["sla_targets"]


class TestCapacityMath:
    def test_effective_capacity_applies_overbooking_and_season(self):
        profile = CapacityProfilePayload(
            auth_capacity=10,
            sewing_capacity=5,
            qa_capacity=10,
            overbooking_percent=10,
            seasonality_multipliers={"December": 1.5},
        )
        assert profile.effective_capacity("auth", date(2026, 3, 10)) == 11
        assert profile.effective_capacity("auth", date(2026, 12, 10)) == 16  # floor(10 * 1.5 * 1.1)

    def test_rush_allowance_rounds_up(self):
        profile = CapacityProfilePayload(auth_capacity=8, sewing_capacity=5, qa_capacity=10, rush_bucket_percent=15)
        assert profile.rush_allowance("auth") == 2  # ceil(1.2)
        assert profile.rush_allowance("qa") == 2  # ceil(1.5)

    def test_qa_capacity_minutes(self):
        profile = CapacityProfilePayload(
            auth_capacity=1, sewing_capacity=1, qa_capacity=1, qa_headcount=3, qa_shift_minutes=400
        )
        assert profile.qa_capacity_minutes == 1200

    def test_defaults(self):
        profile = CapacityProfilePayload(auth_capacity=1, sewing_capacity=1, qa_capacity=1)
        assert profile.overbooking_percent == 10
        assert profile.rush_bucket_percent == 15
        assert profile.working_days[-1] == "saturday"
        assert profile.seasonality_for(date(2026, 7, 1)) == 1.0
