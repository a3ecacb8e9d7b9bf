from __future__ import annotations

import math

import pytest

from grantdesk.errors import InvalidRequest
from grantdesk.rubric import (
    CriterionSpec, RubricEntry, compute_weighted_score, missing_required_comments,
    normalize_rubric, validate_criteria,
)
from grantdesk.schemas import CriterionIn, RubricEntryIn


def spec(cid: int, weight: float = 50, max_score: float = 10, **kw) -> CriterionSpec:
    return CriterionSpec(id=cid, name=f"C{cid}", weight=weight, max_score=max_score, **kw)


def entry(cid: int, score, **kw) -> RubricEntryIn:
    return RubricEntryIn(criterion_id=cid, score=score, **kw)


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


class TestNormalizeRubric:
    def test_one_entry_per_criterion_in_criteria_order(self):
        criteria = [spec(3), spec(1), spec(2)]
        result = normalize_rubric(criteria, [entry(2, 5), entry(3, 7)])
        assert [e.criterion_id for e in result.entries] == [3, 1, 2]
        assert result.missing_scores == [1]
        assert not result.complete

    def test_missing_score_zero_filled(self):
        result = normalize_rubric([spec(1)], [])
        assert result.entries[0].score == 0
        assert result.missing_scores == [1]

    def test_null_and_non_finite_scores_count_as_missing(self):
        criteria = [spec(1), spec(2), spec(3)]
        result = normalize_rubric(criteria, [entry(1, None), entry(2, math.nan), entry(3, math.inf)])
        assert [e.score for e in result.entries] == [0, 0, 0]
        assert result.missing_scores == [1, 2, 3]

    def test_max_score_comes_from_criterion(self):
        submitted = RubricEntryIn.model_validate({"criterion_id": 1, "score": 4, "max_score": 1000})
        result = normalize_rubric([spec(1, max_score=5)], [submitted])
        assert result.entries[0].max_score == 5

    def test_extraneous_criteria_ignored(self):
        result = normalize_rubric([spec(1)], [entry(1, 3), entry(99, 8)])
        assert len(result.entries) == 1
        assert result.complete

    def test_scores_clamped_to_range(self):
        result = normalize_rubric([spec(1, max_score=10), spec(2, max_score=10)], [entry(1, 14), entry(2, -3)])
        assert [e.score for e in result.entries] == [10, 0]

    def test_text_trimmed_and_empty_items_dropped(self):
        result = normalize_rubric(
            [spec(1)],
            [entry(1, 6, comments="  solid plan  ", strengths=[" clear ", "", "  "], weaknesses=["", " thin budget"])],
        )
        e = result.entries[0]
        assert e.comments == "solid plan"
        assert e.strengths == ["clear"]
        assert e.weaknesses == ["thin budget"]

    def test_duplicate_submission_last_wins(self):
        result = normalize_rubric([spec(1)], [entry(1, 2), entry(1, 9)])
        assert result.entries[0].score == 9


# ---------------------------------------------------------------------------
# Weighted score
# ---------------------------------------------------------------------------


class TestComputeWeightedScore:
    def test_single_criterion(self):
        criteria = [spec(1, weight=100, max_score=100)]
        entries = normalize_rubric(criteria, [entry(1, 80)]).entries
        assert compute_weighted_score(entries, criteria) == 80.00

    def test_weighted_average(self):
        criteria = [spec(1, weight=70, max_score=10), spec(2, weight=30, max_score=5)]
        entries = normalize_rubric(criteria, [entry(1, 5), entry(2, 5)]).entries
        # 0.5 * 70 + 1.0 * 30 = 65
        assert compute_weighted_score(entries, criteria) == 65.0

    def test_rounded_to_two_decimals(self):
        criteria = [spec(1, weight=1, max_score=3)]
        entries = normalize_rubric(criteria, [entry(1, 1)]).entries
        assert compute_weighted_score(entries, criteria) == 33.33

    def test_full_marks_is_exactly_100(self):
        criteria = [spec(1, weight=40, max_score=7), spec(2, weight=60, max_score=3)]
        entries = normalize_rubric(criteria, [entry(1, 7), entry(2, 3)]).entries
        assert compute_weighted_score(entries, criteria) == 100.0

    def test_below_full_marks_is_below_100(self):
        criteria = [spec(1, weight=40, max_score=7), spec(2, weight=60, max_score=3)]
        entries = normalize_rubric(criteria, [entry(1, 7), entry(2, 2.9)]).entries
        assert 0 <= compute_weighted_score(entries, criteria) < 100

    def test_out_of_range_entry_is_clamped(self):
        criteria = [spec(1, weight=100, max_score=10)]
        entries = [RubricEntry(criterion_id=1, score=25, max_score=10)]
        assert compute_weighted_score(entries, criteria) == 100.0

    def test_zero_weights_fall_back_to_raw_ratio(self):
        criteria = [spec(1, weight=0, max_score=10), spec(2, weight=0, max_score=30)]
        entries = normalize_rubric(criteria, [entry(1, 5), entry(2, 15)]).entries
        assert compute_weighted_score(entries, criteria) == 50.0

    def test_zero_weights_and_zero_max_scores_is_zero(self):
        criteria = [spec(1, weight=0, max_score=0)]
        entries = [RubricEntry(criterion_id=1, score=0, max_score=0)]
        assert compute_weighted_score(entries, criteria) == 0.0

    def test_empty_inputs(self):
        assert compute_weighted_score([], [spec(1)]) == 0.0
        assert compute_weighted_score([RubricEntry(criterion_id=1, score=5, max_score=10)], []) == 0.0

    def test_unknown_criterion_entries_skipped(self):
        criteria = [spec(1, weight=100, max_score=10)]
        entries = [
            RubricEntry(criterion_id=1, score=10, max_score=10),
            RubricEntry(criterion_id=2, score=0, max_score=10),
        ]
        assert compute_weighted_score(entries, criteria) == 100.0


class TestRequiredComments:
    def test_flags_only_required_criteria_without_comments(self):
        criteria = [spec(1, require_comments=True), spec(2, require_comments=True), spec(3)]
        entries = normalize_rubric(
            criteria, [entry(1, 5, comments="ok"), entry(2, 5, comments="   "), entry(3, 5)],
        ).entries
        assert missing_required_comments(entries, criteria) == [2]


class TestValidateCriteria:
    def _criterion(self, weight, max_score=10, type="impact"):
        return CriterionIn(name="Impact", weight=weight, max_score=max_score, type=type)

    def test_accepts_weights_summing_to_100(self):
        validate_criteria([self._criterion(60), self._criterion(40.3)])

    def test_rejects_weights_off_by_more_than_half_a_point(self):
        with pytest.raises(InvalidRequest, match="add up to 100"):
            validate_criteria([self._criterion(60), self._criterion(39)])

    def test_rejects_unknown_type(self):
        with pytest.raises(InvalidRequest, match="Unsupported criterion type"):
            validate_criteria([self._criterion(100, type="vibes")])

    def test_rejects_non_positive_max_score(self):
        with pytest.raises(InvalidRequest, match="positive max score"):
            validate_criteria([self._criterion(100, max_score=0)])
