"""Rubric normalization and weighted scoring.

Architecture
------------
Evaluators submit a possibly-incomplete list of per-criterion scores. Two pure
steps turn that into a canonical result:

- **Normalization**: one entry per criterion of the call, in the call's order.
  Missing or non-finite scores become 0 and are reported in ``missing_scores``;
  ``max_score`` always comes from the criterion, never from the caller; free
  text is trimmed and empty strengths/weaknesses are dropped.
- **Weighted score**: each score is normalized into [0, 1] against its
  criterion's max and weighted by the criterion's weight, giving a 0–100
  result rounded to two decimals. When the weights sum to zero or less the
  score falls back to the unweighted ratio ``Σscore / Σmax``.

Scoring never rejects a rubric. Weight sums are validated when templates
are authored (``validate_criteria``).
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Sequence

from grantdesk.errors import InvalidRequest
from grantdesk.models import EvaluationCriterion
from grantdesk.schemas import CriterionIn, RubricEntryIn
from grantdesk.utils import sanitize_list, sanitize_text

log = logging.getLogger(__name__)

CRITERION_TYPES = frozenset({
    "innovation", "feasibility", "impact", "methodology", "budget", "team", "sustainability",
})
WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.5


@dataclass(frozen=True)
class CriterionSpec:
    """The scoring-relevant view of an evaluation criterion."""
    id: int
    name: str
    weight: float
    max_score: float
    description: str = ""
    require_comments: bool = False

    @classmethod
    def from_record(cls, record: EvaluationCriterion) -> CriterionSpec:
        return cls(
            id=record.id,
            name=record.name,
            weight=record.weight,
            max_score=record.max_score,
            description=record.description,
            require_comments=bool(record.require_comments),
        )


@dataclass
class RubricEntry:
    criterion_id: int
    score: float
    max_score: float
    comments: str = ""
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NormalizedRubric:
    entries: list[RubricEntry]
    missing_scores: list[int]

    @property
    def complete(self) -> bool:
        return not self.missing_scores


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _clamp(score: float, max_score: float) -> float:
    if max_score <= 0:
        return score
    return max(0.0, min(score, max_score))


def normalize_rubric(
    criteria: Sequence[CriterionSpec],
    submitted: Iterable[RubricEntryIn],
) -> NormalizedRubric:
    """Build one entry per criterion, in criteria order.

    Submitted entries for unknown criteria are ignored. When the same criterion
    is submitted twice the last entry wins.
    """
    by_criterion = {item.criterion_id: item for item in submitted}
    missing: list[int] = []
    entries: list[RubricEntry] = []

    for criterion in criteria:
        item = by_criterion.get(criterion.id)
        score = item.score if item is not None else None
        if not _is_number(score):
            missing.append(criterion.id)
            score = 0.0
        entries.append(RubricEntry(
            criterion_id=criterion.id,
            score=_clamp(float(score), criterion.max_score),
            max_score=criterion.max_score,
            comments=sanitize_text(item.comments if item else ""),
            strengths=sanitize_list(item.strengths if item else []),
            weaknesses=sanitize_list(item.weaknesses if item else []),
        ))

    return NormalizedRubric(entries=entries, missing_scores=missing)


def compute_weighted_score(
    entries: Sequence[RubricEntry],
    criteria: Sequence[CriterionSpec],
) -> float:
    """Return the 0–100 overall score. Never raises, never divides by zero."""
    if not entries or not criteria:
        return 0.0

    lookup = {c.id: c for c in criteria}
    weighted_total = 0.0
    weight_sum = 0.0

    for entry in entries:
        criterion = lookup.get(entry.criterion_id)
        if criterion is None:
            continue
        weight = criterion.weight
        if entry.max_score <= 0 or not _is_number(weight):
            continue
        normalized = max(min(entry.score, entry.max_score), 0.0) / entry.max_score
        weighted_total += normalized * weight
        weight_sum += weight

    if weight_sum <= 0:
        # TODO: surface degenerate-weight rubrics to admins instead of silently switching formulas
        raw_total = sum(e.score for e in entries)
        raw_max = sum(e.max_score for e in entries)
        if raw_max <= 0:
            return 0.0
        log.debug("Weight sum %.2f is not positive, using raw ratio", weight_sum)
        return round(raw_total / raw_max * 100, 2)

    return round(weighted_total / weight_sum * 100, 2)


def missing_required_comments(entries: Sequence[RubricEntry], criteria: Sequence[CriterionSpec]) -> list[int]:
    """Criterion ids flagged ``require_comments`` whose entry has no comment."""
    required = {c.id for c in criteria if c.require_comments}
    return [e.criterion_id for e in entries if e.criterion_id in required and not e.comments]


def validate_criteria(criteria: Sequence[CriterionIn]) -> None:
    """Authoring-time rubric check: weights sum to 100 (±0.5), valid types, positive max scores."""
    total = sum(float(c.weight or 0) for c in criteria)
    if abs(total - WEIGHT_TOTAL) > WEIGHT_TOLERANCE:
        raise InvalidRequest("Criterion weights must add up to 100%")
    for criterion in criteria:
        if criterion.type not in CRITERION_TYPES:
            raise InvalidRequest(f"Unsupported criterion type: {criterion.type}")
        if criterion.max_score <= 0:
            raise InvalidRequest(f'Criterion "{criterion.name}" must have a positive max score.')
