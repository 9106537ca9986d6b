from __future__ import annotations

import math

import numpy as np
import pytest

from attendance.face.descriptor import (
    DESCRIPTOR_DIM,
    DescriptorDimensionError,
    as_descriptor,
    euclidean_distance,
    is_valid_descriptor,
)
from attendance.face.enrollment import EnrollmentRecord
from attendance.face.matcher import UNKNOWN_LABEL, DescriptorMatcher, MatcherConfig


def _axis(i: int, scale: float = 1.0) -> np.ndarray:
    v = np.zeros(DESCRIPTOR_DIM, dtype=np.float64)
    v[i] = scale
    return v


def _alice_and_bob():
    # Alice: five unit samples on axes 0..4 (pairwise sqrt(2) apart). Bob: far away on axis 20.
    alice = EnrollmentRecord("Alice", [_axis(k) for k in range(5)])
    bob = EnrollmentRecord("Bob", [_axis(20, 5.0), _axis(21, 5.0)])
    return [alice, bob]


def test_as_descriptor_accepts_lists_and_float32_rows():
    d = as_descriptor(np.ones((1, DESCRIPTOR_DIM), dtype=np.float32))
    assert d.shape == (DESCRIPTOR_DIM,)
    assert d.dtype == np.float64
    assert is_valid_descriptor([0.0] * DESCRIPTOR_DIM)


def test_as_descriptor_rejects_wrong_dimension_and_nan():
    with pytest.raises(DescriptorDimensionError):
        as_descriptor([0.0] * 127)
    with pytest.raises(DescriptorDimensionError):
        as_descriptor(np.zeros((2, DESCRIPTOR_DIM)))
    bad = np.zeros(DESCRIPTOR_DIM)
    bad[3] = np.nan
    with pytest.raises(ValueError):
        as_descriptor(bad)
    assert not is_valid_descriptor(None)


def test_euclidean_distance_mismatch_is_an_error_not_infinity():
    with pytest.raises(DescriptorDimensionError):
        euclidean_distance(np.zeros(128), np.zeros(512))
    assert euclidean_distance(_axis(0), _axis(1)) == pytest.approx(math.sqrt(2.0))


def test_alice_scenario_accept_and_reject():
    matcher = DescriptorMatcher.build(_alice_and_bob(), threshold=0.6)

    near = _axis(0) + _axis(10, 0.3)
    res = matcher.find_best_match(near)
    assert res.label == "Alice"
    assert res.distance == pytest.approx(0.3)
    assert res.confidence == pytest.approx(1.0 - 0.3 / 1.2)
    assert not res.is_unknown

    far = _axis(0) + _axis(10, 0.9)
    res = matcher.find_best_match(far)
    assert res.label == UNKNOWN_LABEL
    assert res.is_unknown
    # Rejected results still describe the closest candidate.
    assert res.distance == pytest.approx(0.9)
    assert res.confidence == pytest.approx(0.25)


def test_distance_equal_to_threshold_is_rejected():
    matcher = DescriptorMatcher.build([EnrollmentRecord("Alice", [_axis(0)])], threshold=0.5)
    res = matcher.find_best_match(_axis(0) + _axis(1, 0.5))
    assert res.is_unknown


def test_empty_enrollment_always_unknown():
    matcher = DescriptorMatcher.build([], threshold=0.6)
    assert matcher.is_empty
    res = matcher.find_best_match(_axis(0))
    assert res.label == UNKNOWN_LABEL
    assert res.distance == float("inf")
    assert res.confidence == 0.0


def test_malformed_query_returns_unknown_without_raising():
    matcher = DescriptorMatcher.build(_alice_and_bob())
    for query in (None, [0.0] * 64, "not a vector", np.full(DESCRIPTOR_DIM, np.inf)):
        res = matcher.find_best_match(query)
        assert res.is_unknown
        assert res.distance == float("inf")
        assert res.confidence == 0.0


def test_exact_enrolled_descriptor_matches_for_any_positive_threshold():
    records = _alice_and_bob()
    for thr in (1e-9, 0.01, 0.6, 3.0):
        matcher = DescriptorMatcher.build(records, threshold=thr)
        res = matcher.find_best_match(_axis(3))
        assert res.label == "Alice"
        assert res.distance == 0.0
        assert res.confidence == 1.0


def test_acceptance_is_monotonic_in_threshold():
    records = _alice_and_bob()
    rng = np.random.default_rng(7)
    queries = [_axis(0) + rng.normal(0.0, 0.08, DESCRIPTOR_DIM) for _ in range(20)]
    thresholds = [0.2, 0.4, 0.6, 0.8, 1.0, 1.5]
    matchers = [DescriptorMatcher.build(records, threshold=t) for t in thresholds]
    for q in queries:
        accepted = [not m.find_best_match(q).is_unknown for m in matchers]
        # once accepted at a threshold, accepted at every larger one
        first = accepted.index(True) if True in accepted else len(accepted)
        assert all(accepted[first:])


def test_find_best_match_is_deterministic():
    matcher = DescriptorMatcher.build(_alice_and_bob())
    q = _axis(1) + _axis(50, 0.2)
    results = {(r.label, r.distance) for r in (matcher.find_best_match(q) for _ in range(10))}
    assert len(results) == 1


def test_minimum_not_average_over_descriptors():
    # One close sample and several far ones: the close one decides.
    carol = EnrollmentRecord("Carol", [_axis(0), _axis(1, 10.0), _axis(2, 10.0), _axis(3, 10.0)])
    matcher = DescriptorMatcher.build([carol], threshold=0.6)
    res = matcher.find_best_match(_axis(0) + _axis(9, 0.1))
    assert res.label == "Carol"
    assert res.distance == pytest.approx(0.1)


def test_tie_goes_to_first_enrolled_label():
    same = _axis(7)
    records = [EnrollmentRecord("Zoe", [same]), EnrollmentRecord("Adam", [same.copy()])]
    res = DescriptorMatcher.build(records).find_best_match(same)
    assert res.label == "Zoe"

    reversed_res = DescriptorMatcher.build(list(reversed(records))).find_best_match(same)
    assert reversed_res.label == "Adam"


def test_records_without_usable_descriptors_are_skipped():
    records = [
        EnrollmentRecord("Empty", []),
        EnrollmentRecord("Broken", [np.zeros(64)]),
        EnrollmentRecord("Mixed", [np.zeros(64), _axis(5)]),
    ]
    matcher = DescriptorMatcher.build(records)
    assert matcher.labels == ("Mixed",)
    assert matcher.find_best_match(_axis(5)).label == "Mixed"


def test_duplicate_label_keeps_later_record():
    records = [EnrollmentRecord("Alice", [_axis(0)]), EnrollmentRecord("Alice", [_axis(1)])]
    matcher = DescriptorMatcher.build(records)
    assert len(matcher) == 1
    assert matcher.find_best_match(_axis(1)).distance == 0.0
    assert matcher.find_best_match(_axis(0)).distance == pytest.approx(math.sqrt(2.0))


def test_rank_lists_labels_closest_first():
    matcher = DescriptorMatcher.build(_alice_and_bob())
    ranked = matcher.rank(_axis(0), top_k=5)
    assert [name for name, _ in ranked] == ["Alice", "Bob"]
    assert ranked[0][1] == 0.0
    assert matcher.rank([1.0, 2.0]) == []


def test_custom_unknown_label_and_normalization():
    cfg = MatcherConfig(threshold=0.6, normalization=2.0, unknown_label="Inconnu")
    matcher = DescriptorMatcher.build(_alice_and_bob(), config=cfg)
    res = matcher.find_best_match(_axis(0) + _axis(10, 1.0))
    assert res.label == "Inconnu"
    assert res.is_unknown
    assert res.confidence == pytest.approx(0.5)


def test_record_named_like_the_unknown_label_is_not_indexed():
    cfg = MatcherConfig(unknown_label="Inconnu")
    records = [EnrollmentRecord("inconnu", [_axis(0)]), EnrollmentRecord("Bob", [_axis(20, 5.0)])]
    matcher = DescriptorMatcher.build(records, config=cfg)
    assert matcher.labels == ("Bob",)
    res = matcher.find_best_match(_axis(0))
    assert res.is_unknown
    assert res.distance == pytest.approx(math.sqrt(26.0))
