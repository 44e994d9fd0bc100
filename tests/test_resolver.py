"""Tests for resolution policies."""

from datetime import datetime, timedelta, timezone

import pytest

from medsync.errors import ConfigurationError
from medsync.reconciliation.detector import detect_conflicts
from medsync.reconciliation.keys import derive_key
from medsync.reconciliation.records import (
    MANUAL_REVIEW,
    ResolutionPolicy,
    SourceRecord,
    SourceType,
)
from medsync.reconciliation.resolver import resolve_conflicts

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
NOW = datetime(2024, 5, 1, 13, 0, tzinfo=timezone.utc)


def _make_med(source_type, dosage="10mg", ndc="123", collected_at=T0, **fields):
    return SourceRecord(
        source_type=source_type,
        source_id=source_type.value.lower(),
        collected_at=collected_at,
        ndc=ndc,
        name=fields.pop("name", "Lisinopril"),
        dosage=dosage,
        **fields,
    )


def _conflicting_pair():
    return [
        _make_med(SourceType.PHARMACY, dosage="20mg"),
        _make_med(SourceType.EHR, dosage="10mg", collected_at=T0 - timedelta(minutes=5)),
    ]


def _resolve(records, policy):
    return resolve_conflicts(detect_conflicts(records), policy, now=NOW)


def test_ehr_priority_picks_ehr_record():
    records = _conflicting_pair()
    [outcome] = _resolve(records, "ehr_priority")

    assert outcome.resolved_record == records[1]
    assert outcome.resolution_method == "ehr_priority"
    assert outcome.conflict_group_key == "ndc_123"
    assert not outcome.requires_manual_review


def test_pharmacy_priority_picks_pharmacy_record():
    records = _conflicting_pair()
    [outcome] = _resolve(records, ResolutionPolicy.PHARMACY_PRIORITY)
    assert outcome.resolved_record == records[0]
    assert outcome.resolution_method == "pharmacy_priority"


def test_priority_policy_falls_back_to_first_record():
    records = [
        _make_med(SourceType.INTERNAL, dosage="5mg"),
        _make_med(SourceType.PHARMACY, dosage="20mg"),
    ]
    [outcome] = _resolve(records, "ehr_priority")
    assert outcome.resolved_record == records[0]
    assert outcome.resolution_method == "default"


def test_latest_timestamp_picks_most_recent():
    records = [
        _make_med(SourceType.EHR, dosage="10mg", collected_at=T0),
        _make_med(SourceType.PHARMACY, dosage="20mg", collected_at=T0 + timedelta(seconds=60)),
        _make_med(SourceType.INTERNAL, dosage="15mg", collected_at=T0 + timedelta(seconds=30)),
    ]
    [outcome] = _resolve(records, "latest_timestamp")
    assert outcome.resolved_record.dosage == "20mg"
    assert outcome.resolution_method == "latest_timestamp"


def test_latest_timestamp_tie_keeps_first():
    records = [_make_med(SourceType.EHR, dosage="10mg"), _make_med(SourceType.PHARMACY, dosage="20mg")]
    [outcome] = _resolve(records, "latest_timestamp")
    assert outcome.resolved_record.source_type == SourceType.EHR


def test_manual_policy_never_picks_a_value():
    records = _conflicting_pair()
    [outcome] = _resolve(records, "manual")

    assert outcome.requires_manual_review is True
    assert outcome.resolved_record is None
    assert outcome.resolution_method == MANUAL_REVIEW
    assert outcome.candidates == tuple(records)
    assert outcome.conflicts[0].kind.value == "dosage_mismatch"


def test_default_policy_picks_first_record():
    records = _conflicting_pair()
    [outcome] = _resolve(records, "default")
    assert outcome.resolved_record == records[0]


def test_unknown_policy_fails_fast():
    with pytest.raises(ConfigurationError, match="majority_vote"):
        _resolve(_conflicting_pair(), "majority_vote")


def test_unconflicted_records_pass_through():
    """Singletons and agreeing groups get an outcome even under the manual policy."""
    records = [
        _make_med(SourceType.EHR, ndc="A"),
        _make_med(SourceType.PHARMACY, ndc="A"),
        _make_med(SourceType.PHARMACY, ndc="B"),
    ]
    outcomes = _resolve(records, "manual")

    assert [o.key for o in outcomes] == ["ndc_A", "ndc_B"]
    assert all(o.resolution_method == "manual" for o in outcomes)
    assert all(not o.requires_manual_review for o in outcomes)
    assert all(o.conflict_group_key is None for o in outcomes)


def test_pass_through_carries_configured_policy_name():
    """Unconflicted outcomes are tagged with the policy, not a separate method name."""
    records = [
        _make_med(SourceType.EHR, ndc="A", dosage="1mg"),
        _make_med(SourceType.PHARMACY, ndc="A", dosage="2mg"),
        _make_med(SourceType.PHARMACY, ndc="B"),
    ]
    conflicted, single = _resolve(records, "ehr_priority")

    assert conflicted.conflict_group_key == "ndc_A"
    assert single.resolution_method == "ehr_priority"
    assert single.conflict_group_key is None
    assert single.resolved_record == records[2]


@pytest.mark.parametrize("policy", [p.value for p in ResolutionPolicy])
def test_every_key_resolved_exactly_once(policy):
    records = [
        _make_med(SourceType.EHR, ndc="A", dosage="1mg"),
        _make_med(SourceType.PHARMACY, ndc="A", dosage="2mg"),
        _make_med(SourceType.EHR, ndc=None, name="Aspirin"),
        _make_med(SourceType.PHARMACY, ndc=None, rxcui="1191", name="Aspirin"),
        _make_med(SourceType.INTERNAL, ndc="C", status="stopped"),
        _make_med(SourceType.PHARMACY, ndc="C", status="active"),
    ]
    outcomes = _resolve(records, policy)
    keys = [o.key for o in outcomes]

    assert len(keys) == len(set(keys))
    assert set(keys) == {derive_key(r) for r in records}


def test_resolution_is_deterministic():
    records = _conflicting_pair() + [_make_med(SourceType.EHR, ndc="Z")]
    first = _resolve(records, "latest_timestamp")
    second = _resolve(list(records), "latest_timestamp")
    assert first == second
