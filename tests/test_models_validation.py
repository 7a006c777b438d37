"""
test_models_validation.py — Shelter/alert data models and input validation.

Covers:
    • Enums (severity ordering, alert status machine)
    • ShelterStatus / Alert serialisation
    • StatusPatch field paths and the sparse merge
    • Folding patches left-to-right
    • Accumulating validators (every violation reported at once)

Run with:
    pytest tests/test_models_validation.py -v
"""

from __future__ import annotations

import pytest

from safehaven.alerts.models import (
    ALLOWED_TRANSITIONS,
    Alert,
    AlertPriority,
    AlertStatus,
    AlertType,
    can_transition,
)
from safehaven.core.errors import ValidationError
from safehaven.core.validation import (
    check_capacity_invariant,
    require_actor,
    validate_alert_edit,
    validate_alert_input,
    validate_shelter_creation,
    validate_status_update,
)
from safehaven.shelters.models import (
    Capacity,
    OperationalState,
    ResourceLevel,
    Resources,
    ShelterStatus,
    StatusPatch,
    fold_patches,
    merge_status,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_status(
    shelter_id: str = "S1",
    current: int = 50,
    maximum: int = 100,
    state: OperationalState = OperationalState.AVAILABLE,
) -> ShelterStatus:
    return ShelterStatus(
        shelter_id=shelter_id,
        name="Riverside Community Centre",
        capacity=Capacity(current=current, maximum=maximum),
        operational_state=state,
    )


def _alert_payload(**overrides) -> dict:
    payload = {
        "shelter_id": "S1",
        "type": "medical_emergency",
        "priority": "critical",
        "title": "Insulin needed",
        "description": "Two diabetic evacuees, no insulin on site",
    }
    payload.update(overrides)
    return payload


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Enums
# ═══════════════════════════════════════════════════════════════════════════

class TestResourceLevel:

    def test_severity_ordering(self):
        assert ResourceLevel.ADEQUATE.severity < ResourceLevel.LOW.severity
        assert ResourceLevel.LOW.severity < ResourceLevel.CRITICAL.severity
        assert ResourceLevel.CRITICAL.severity < ResourceLevel.UNAVAILABLE.severity

    def test_is_worse_than(self):
        assert ResourceLevel.CRITICAL.is_worse_than(ResourceLevel.LOW)
        assert not ResourceLevel.ADEQUATE.is_worse_than(ResourceLevel.ADEQUATE)

    def test_worst_resource(self):
        resources = Resources(water=ResourceLevel.CRITICAL, food=ResourceLevel.LOW)
        assert resources.worst() == ResourceLevel.CRITICAL


class TestAlertStatusMachine:

    def test_forward_transitions_allowed(self):
        assert can_transition(AlertStatus.OPEN, AlertStatus.ACKNOWLEDGED)
        assert can_transition(AlertStatus.OPEN, AlertStatus.RESOLVED)
        assert can_transition(AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED)

    def test_no_regression(self):
        assert not can_transition(AlertStatus.ACKNOWLEDGED, AlertStatus.OPEN)
        assert not can_transition(AlertStatus.RESOLVED, AlertStatus.OPEN)
        assert not can_transition(AlertStatus.RESOLVED, AlertStatus.ACKNOWLEDGED)

    def test_resolved_is_terminal(self):
        assert AlertStatus.RESOLVED.is_terminal
        assert ALLOWED_TRANSITIONS[AlertStatus.RESOLVED] == frozenset()

    def test_transitions_only_move_forward(self):
        for current, targets in ALLOWED_TRANSITIONS.items():
            for target in targets:
                assert target.rank > current.rank

    def test_priority_rank(self):
        assert AlertPriority.LOW.rank < AlertPriority.CRITICAL.rank


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Records
# ═══════════════════════════════════════════════════════════════════════════

class TestShelterStatus:

    def test_round_trip(self):
        status = _make_status()
        restored = ShelterStatus.from_dict(status.to_dict())
        assert restored == status

    def test_retired_when_offline(self):
        assert _make_status(state=OperationalState.OFFLINE).is_retired
        assert not _make_status().is_retired

    def test_occupancy_rate(self):
        assert _make_status(current=25, maximum=100).capacity.occupancy_rate == pytest.approx(0.25)


class TestAlertRecord:

    def test_defaults(self):
        alert = Alert(
            shelter_id="S1", type=AlertType.SECURITY_ISSUE, priority=AlertPriority.HIGH,
            title="t", description="d", created_by="op-1",
        )
        assert alert.status == AlertStatus.OPEN
        assert alert.sort_timestamp == int(alert.created_at.timestamp() * 1000)
        assert alert.acknowledged_by is None

    def test_round_trip(self):
        alert = Alert(
            shelter_id="S1", type=AlertType.CAPACITY_FULL, priority=AlertPriority.MEDIUM,
            title="Full", description="No beds left", created_by="op-1",
        )
        assert Alert.from_dict(alert.to_dict()) == alert


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Sparse Merge
# ═══════════════════════════════════════════════════════════════════════════

class TestStatusPatch:

    def test_field_paths(self):
        patch = StatusPatch(capacity_current=60, resources={"water": ResourceLevel.CRITICAL})
        assert patch.field_paths() == ["capacity.current", "resources.water"]

    def test_empty(self):
        assert StatusPatch().is_empty

    def test_payload_matches_validation(self):
        payload = {"capacity": {"current": 60}, "resources": {"water": "critical"}}
        assert validate_status_update(payload).to_payload() == payload


class TestMergeStatus:

    def test_only_supplied_fields_change(self):
        status = _make_status()
        merged = merge_status(status, StatusPatch(capacity_current=60))
        assert merged.capacity.current == 60
        assert merged.capacity.maximum == 100
        assert merged.operational_state == OperationalState.AVAILABLE
        assert merged.resources == status.resources

    def test_does_not_mutate_input(self):
        status = _make_status()
        merge_status(status, StatusPatch(capacity_current=99, urgent_needs=["water"]))
        assert status.capacity.current == 50
        assert status.urgent_needs == []

    def test_single_resource(self):
        merged = merge_status(_make_status(), StatusPatch(resources={"water": ResourceLevel.CRITICAL}))
        assert merged.resources.water == ResourceLevel.CRITICAL
        assert merged.resources.food == ResourceLevel.ADEQUATE

    def test_urgent_needs_replaced_wholesale(self):
        status = _make_status()
        status.urgent_needs = ["blankets"]
        merged = merge_status(status, StatusPatch(urgent_needs=["insulin"]))
        assert merged.urgent_needs == ["insulin"]


class TestFoldPatches:

    PATCHES = [
        StatusPatch(capacity_current=60),
        StatusPatch(resources={"water": ResourceLevel.CRITICAL}),
        StatusPatch(capacity_current=70, operational_state=OperationalState.LIMITED),
        StatusPatch(resources={"water": ResourceLevel.LOW, "food": ResourceLevel.LOW}),
    ]

    def test_fold_equals_sequential_application(self):
        status = _make_status()
        sequential = status
        for patch in self.PATCHES:
            sequential = merge_status(sequential, patch)
        assert fold_patches(status, self.PATCHES) == sequential

    def test_fold_split_anywhere(self):
        status = _make_status()
        whole = fold_patches(status, self.PATCHES)
        for split in range(len(self.PATCHES) + 1):
            left = fold_patches(status, self.PATCHES[:split])
            assert fold_patches(left, self.PATCHES[split:]) == whole

    def test_later_patch_wins_per_field(self):
        result = fold_patches(_make_status(), self.PATCHES)
        assert result.capacity.current == 70
        assert result.resources.water == ResourceLevel.LOW
        assert result.resources.medical == ResourceLevel.ADEQUATE


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestValidateStatusUpdate:

    def test_valid_sparse_update(self):
        patch = validate_status_update({"capacity": {"current": 60}})
        assert patch.capacity_current == 60
        assert patch.capacity_maximum is None

    def test_accumulates_every_violation(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_status_update({
                "capacity": {"current": 120, "maximum": 100},
                "resources": {"water": "plenty", "fuel": "low"},
                "operational_state": "closed",
            })
        errors = exc_info.value.errors
        assert len(errors) == 4
        assert any("cannot exceed" in e for e in errors)
        assert any("water" in e for e in errors)
        assert any("fuel" in e for e in errors)
        assert any("closed" in e for e in errors)
        assert exc_info.value.status_code == 422

    def test_negative_capacity(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_status_update({"capacity": {"current": -1}})
        assert "non-negative" in exc_info.value.errors[0]

    def test_boolean_is_not_a_count(self):
        with pytest.raises(ValidationError):
            validate_status_update({"capacity": {"current": True}})

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_status_update({"capacity": {"current": 1}, "colour": "red"})
        assert exc_info.value.errors == ["Unknown status field: colour"]

    def test_empty_update_rejected(self):
        with pytest.raises(ValidationError):
            validate_status_update({})

    def test_merged_invariant(self):
        check_capacity_invariant(Capacity(current=100, maximum=100))
        with pytest.raises(ValidationError):
            check_capacity_invariant(Capacity(current=101, maximum=100))


class TestValidateShelterCreation:

    def test_minimal(self):
        status = validate_shelter_creation(
            {"shelter_id": "S9", "name": " Gym ", "capacity": {"maximum": 40}}, operator_id="op-1",
        )
        assert status.shelter_id == "S9"
        assert status.name == "Gym"
        assert status.capacity == Capacity(current=0, maximum=40)
        assert status.operator_id == "op-1"
        assert status.version == 1

    def test_generates_id(self):
        status = validate_shelter_creation({"name": "Gym", "capacity": {"maximum": 40}})
        assert status.shelter_id

    def test_collects_all_errors(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_shelter_creation({
                "name": "",
                "capacity": {"current": 5},
                "location": {"latitude": 120, "longitude": 0},
                "contact": {"phone": "123"},
            })
        errors = exc_info.value.errors
        assert "Maximum capacity is required" in errors
        assert any("name" in e for e in errors)
        assert any("latitude" in e for e in errors)
        assert any("Contact" in e for e in errors)


class TestValidateAlertInput:

    def test_valid(self):
        alert_input = validate_alert_input(_alert_payload())
        assert alert_input.type == AlertType.MEDICAL_EMERGENCY
        assert alert_input.priority == AlertPriority.CRITICAL
        assert alert_input.alert_id is None

    def test_all_missing(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_alert_input({})
        assert len(exc_info.value.errors) == 5

    def test_bad_enums(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_alert_input(_alert_payload(type="fire", priority="urgent"))
        assert len(exc_info.value.errors) == 2

    def test_client_alert_id(self):
        assert validate_alert_input(_alert_payload(alert_id="a-1")).alert_id == "a-1"

    def test_require_actor(self):
        assert require_actor("r1") == "r1"
        with pytest.raises(ValidationError):
            require_actor("  ")

    def test_edit_takes_description_only(self):
        assert validate_alert_edit({"description": "  Need test strips "}) == "Need test strips"
        with pytest.raises(ValidationError) as exc_info:
            validate_alert_edit({"title": "x", "type": "fire", "description": "ok"})
        assert exc_info.value.errors == [
            "Alert fields cannot be changed after creation: title, type",
        ]
