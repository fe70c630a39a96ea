"""Similarity scoring between two templates.

score = 0.4 * tag jaccard + 0.3 * parameter match + 0.3 * step LCS ratio

Pure functions with no I/O. Each component is in [0, 1] and symmetric in
its arguments, so the score is too. Input that doesn't look like a template
(missing attributes, wrong shapes) scores 0.0 rather than raising.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

TAG_WEIGHT = 0.4
PARAM_WEIGHT = 0.3
STEP_WEIGHT = 0.3


class Breakdown(NamedTuple):
    tags: float
    params: float
    steps: float

    @property
    def score(self) -> float:
        total = TAG_WEIGHT * self.tags + PARAM_WEIGHT * self.params + STEP_WEIGHT * self.steps
        # Float noise must not push identical templates above 1.0
        return min(1.0, max(0.0, total))


def jaccard(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def param_match(a: Mapping[str, str], b: Mapping[str, str]) -> float:
    """Share of parameter names present in both schemas with the same type."""
    names = set(a) | set(b)
    if not names:
        return 1.0
    matching = sum(1 for name in set(a) & set(b) if a[name] == b[name])
    return matching / len(names)


def lcs_length(a: Sequence[str], b: Sequence[str]) -> int:
    if not a or not b:
        return 0
    prev = [0] * (len(b) + 1)
    for item in a:
        row = [0]
        for j, other in enumerate(b, start=1):
            row.append(prev[j - 1] + 1 if item == other else max(prev[j], row[j - 1]))
        prev = row
    return prev[-1]


def lcs_ratio(a: Sequence[str], b: Sequence[str]) -> float:
    if not a and not b:
        return 1.0
    return 2 * lcs_length(a, b) / (len(a) + len(b))


def is_strict_subsequence(shorter: Sequence[str], longer: Sequence[str]) -> bool:
    """True if *shorter* appears in order within *longer* and is strictly shorter."""
    if len(shorter) >= len(longer):
        return False
    it = iter(longer)
    return all(step in it for step in shorter)


def _extract(template: Any) -> tuple[frozenset[str], dict[str, str], tuple[str, ...]] | None:
    try:
        tags = frozenset(template.tags)
        schema = dict(template.parameter_schema)
        steps = tuple(template.steps)
    except (AttributeError, TypeError, ValueError):
        return None
    if isinstance(template.tags, str) or isinstance(template.steps, str):
        return None
    if not all(isinstance(t, str) for t in tags) or not all(isinstance(s, str) for s in steps):
        return None
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in schema.items()):
        return None
    return tags, schema, steps


def breakdown(a: Any, b: Any) -> Breakdown:
    ea = _extract(a)
    eb = _extract(b)
    if ea is None or eb is None:
        logger.debug("Malformed template passed to similarity; scoring 0")
        return Breakdown(0.0, 0.0, 0.0)
    return Breakdown(
        tags=jaccard(ea[0], eb[0]),
        params=param_match(ea[1], eb[1]),
        steps=lcs_ratio(ea[2], eb[2]),
    )


def score(a: Any, b: Any) -> float:
    """Similarity of two templates in [0, 1]. Deterministic and symmetric."""
    return breakdown(a, b).score
