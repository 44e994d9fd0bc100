"""Tests for cross-source conflict detection."""

from datetime import datetime, timedelta, timezone

from medsync.reconciliation.detector import detect_conflicts
from medsync.reconciliation.records import ConflictKind, Severity, SourceRecord, SourceType

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _make_med(source_type=SourceType.EHR, ndc="123", **overrides):
    fields = {
        "name": "Lisinopril",
        "dosage": "10mg",
        "frequency": "daily",
        "status": "active",
        "start_date": "2024-01-10T08:00:00+00:00",
    }
    fields.update(overrides)
    return SourceRecord(
        source_type=source_type, source_id=source_type.value.lower(), collected_at=T0, ndc=ndc, **fields
    )


def test_dosage_mismatch_is_high_severity():
    result = detect_conflicts([_make_med(), _make_med(SourceType.PHARMACY, dosage="20mg")])

    assert result.conflict_count == 1
    conflicts = result.conflicted[0].conflicts
    assert len(conflicts) == 1
    assert conflicts[0].kind == ConflictKind.DOSAGE_MISMATCH
    assert conflicts[0].severity == Severity.HIGH
    assert [v.value for v in conflicts[0].values] == ["10mg", "20mg"]
    assert [v.source for v in conflicts[0].values] == [SourceType.EHR, SourceType.PHARMACY]


def test_frequency_and_status_mismatch():
    result = detect_conflicts(
        [_make_med(), _make_med(SourceType.PHARMACY, frequency="BID", status="stopped")]
    )
    kinds = {c.kind: c.severity for c in result.conflicted[0].conflicts}
    assert kinds == {
        ConflictKind.FREQUENCY_MISMATCH: Severity.HIGH,
        ConflictKind.STATUS_MISMATCH: Severity.MEDIUM,
    }


def test_start_date_within_a_day_is_not_a_conflict():
    """12 hours apart stays under the one-day tolerance."""
    result = detect_conflicts(
        [
            _make_med(start_date="2024-01-10T00:00:00+00:00"),
            _make_med(SourceType.PHARMACY, start_date="2024-01-10T12:00:00+00:00"),
        ]
    )
    assert result.conflict_count == 0


def test_start_date_beyond_a_day_is_low_severity():
    result = detect_conflicts(
        [
            _make_med(start_date="2024-01-10T00:00:00+00:00"),
            _make_med(SourceType.PHARMACY, start_date="2024-01-11T12:00:00+00:00"),
        ]
    )
    conflicts = result.conflicted[0].conflicts
    assert len(conflicts) == 1
    assert conflicts[0].kind == ConflictKind.DATE_MISMATCH
    assert conflicts[0].severity == Severity.LOW
    assert conflicts[0].field == "startDate"


def test_missing_start_date_is_ignored():
    result = detect_conflicts([_make_med(), _make_med(SourceType.PHARMACY, start_date=None)])
    assert result.conflict_count == 0


def test_identical_records_are_grouped_but_not_conflicted():
    result = detect_conflicts([_make_med(), _make_med(SourceType.PHARMACY)])
    assert len(result.groups) == 1
    assert len(result.groups[0].records) == 2
    assert not result.groups[0].has_conflicts
    assert result.groups[0].recommendation is None


def test_first_record_is_reference_for_three_sources():
    """Each later record is compared with the first one only."""
    result = detect_conflicts(
        [
            _make_med(dosage="10mg"),
            _make_med(SourceType.PHARMACY, dosage="20mg"),
            _make_med(SourceType.INTERNAL, dosage="20mg"),
        ]
    )
    conflicts = result.conflicted[0].conflicts
    assert [c.kind for c in conflicts] == [ConflictKind.DOSAGE_MISMATCH] * 2
    assert all(c.values[0].value == "10mg" for c in conflicts)


def test_groups_keep_first_seen_order():
    records = [
        _make_med(ndc="B"),
        _make_med(ndc="A"),
        _make_med(SourceType.PHARMACY, ndc="B", dosage="5mg"),
    ]
    result = detect_conflicts(records)
    assert [g.key for g in result.groups] == ["ndc_B", "ndc_A"]
    assert [g.key for g in result.conflicted] == ["ndc_B"]


def test_recommendation_escalates_high_severity():
    result = detect_conflicts([_make_med(), _make_med(SourceType.PHARMACY, dosage="20mg")])
    assert result.conflicted[0].recommendation.action == "clinical_review"
    assert result.conflicted[0].recommendation.priority == "urgent"


def test_recommendation_prefers_most_authoritative_source():
    result = detect_conflicts(
        [_make_med(SourceType.INTERNAL), _make_med(SourceType.PHARMACY, status="stopped")]
    )
    assert result.conflicted[0].recommendation.action == "use_pharmacy_data"

    result = detect_conflicts([_make_med(SourceType.PHARMACY), _make_med(status="stopped")])
    assert result.conflicted[0].recommendation.action == "use_ehr_data"


def test_collected_order_is_irrelevant_to_timestamps():
    """Detection only looks at tracked fields, never at collection time."""
    later = SourceRecord(
        source_type=SourceType.PHARMACY,
        source_id="pharmacy",
        collected_at=T0 + timedelta(hours=3),
        ndc="123",
        name="Lisinopril",
        dosage="10mg",
        frequency="daily",
        status="active",
        start_date="2024-01-10T08:00:00+00:00",
    )
    assert detect_conflicts([_make_med(), later]).conflict_count == 0
