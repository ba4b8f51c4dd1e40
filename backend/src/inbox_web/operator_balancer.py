from __future__ import annotations

from typing import Mapping, Sequence

from .inbox_store import OperatorRecord


def _load_is_lower(
    candidate: OperatorRecord,
    candidate_count: int,
    best: OperatorRecord,
    best_count: int,
) -> bool:
    # count_a / weight_a < count_b / weight_b, compared without floats.
    left = candidate_count * best.weight
    right = best_count * candidate.weight
    if left != right:
        return left < right
    return (candidate.created_at, candidate.id) < (best.created_at, best.id)


def select_operator(
    operators: Sequence[OperatorRecord],
    assignment_counts: Mapping[int, int],
) -> OperatorRecord | None:
    best: OperatorRecord | None = None
    best_count = 0
    for operator in operators:
        if not operator.is_active or operator.weight < 1:
            continue
        current_count = assignment_counts.get(operator.id, 0)
        if best is None or _load_is_lower(operator, current_count, best, best_count):
            best = operator
            best_count = current_count
    return best
