"""Similarity scoring: components, bounds, symmetry and malformed input."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from caplife import similarity
from caplife.core import Template


def _t(tags: list[str], schema: dict[str, str], steps: list[str], tid: str = "t") -> Template:
    return Template(id=tid, capability_id="c", name=tid, parameter_schema=schema, steps=tuple(steps), tags=tuple(tags))


WEB = _t(["web", "deploy"], {"env": "string", "replicas": "integer"}, ["build", "test", "deploy"], "web")
OVERLAP = _t(["web", "deploy"], {"env": "string", "replicas": "integer"}, ["build", "package", "release"], "overlap")
SUPER = _t(["web", "deploy", "canary"], {"env": "string", "replicas": "integer"}, ["build", "test", "scan", "deploy"], "super")
BATCH = _t(["batch"], {"queue": "string"}, ["fetch", "process"], "batch")


class TestComponents:
    def test_jaccard(self) -> None:
        assert similarity.jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert similarity.jaccard(set(), set()) == 1.0
        assert similarity.jaccard({"a"}, set()) == 0.0

    def test_param_match_requires_same_type(self) -> None:
        assert similarity.param_match({"a": "string", "b": "integer"}, {"a": "string", "b": "string"}) == 0.5
        assert similarity.param_match({"a": "string"}, {"b": "string"}) == 0.0
        assert similarity.param_match({}, {}) == 1.0

    def test_lcs(self) -> None:
        assert similarity.lcs_length(["a", "b", "c", "d"], ["a", "c", "d"]) == 3
        assert similarity.lcs_length([], ["a"]) == 0
        assert similarity.lcs_ratio(["a", "b"], ["a", "b"]) == 1.0
        assert similarity.lcs_ratio(["a", "b", "c"], ["a", "x", "y"]) == pytest.approx(1 / 3)

    def test_strict_subsequence(self) -> None:
        assert similarity.is_strict_subsequence(["build", "deploy"], ["build", "test", "deploy"])
        assert not similarity.is_strict_subsequence(["deploy", "build"], ["build", "test", "deploy"])
        assert not similarity.is_strict_subsequence(["build", "deploy"], ["build", "deploy"])


class TestScore:
    def test_identical_templates_score_one(self) -> None:
        assert similarity.score(WEB, WEB) == pytest.approx(1.0)

    def test_weights(self) -> None:
        # tags 1.0, params 1.0, steps 2*1/6
        assert similarity.score(WEB, OVERLAP) == pytest.approx(0.4 + 0.3 + 0.1)
        # tags 2/3, params 1.0, steps 6/7
        assert similarity.score(WEB, SUPER) == pytest.approx(0.4 * 2 / 3 + 0.3 + 0.3 * 6 / 7)

    def test_disjoint_templates_score_zero(self) -> None:
        assert similarity.score(WEB, BATCH) == 0.0

    @pytest.mark.parametrize(("a", "b"), [(WEB, OVERLAP), (WEB, SUPER), (SUPER, BATCH), (OVERLAP, SUPER)])
    def test_symmetric_and_bounded(self, a: Template, b: Template) -> None:
        forward = similarity.score(a, b)
        assert forward == similarity.score(b, a)
        assert 0.0 <= forward <= 1.0

    def test_breakdown_exposes_components(self) -> None:
        parts = similarity.breakdown(WEB, SUPER)
        assert parts.tags == pytest.approx(2 / 3)
        assert parts.params == 1.0
        assert parts.steps == pytest.approx(6 / 7)
        assert parts.score == similarity.score(WEB, SUPER)

    def test_empty_templates(self) -> None:
        empty = _t([], {}, [])
        assert similarity.score(empty, empty) == pytest.approx(1.0)


class TestMalformedInput:
    @pytest.mark.parametrize(
        "bad",
        [
            None,
            "template",
            SimpleNamespace(tags=["web"], parameter_schema={"env": "string"}),
            SimpleNamespace(tags="web", parameter_schema={}, steps=["build"]),
            SimpleNamespace(tags=["web"], parameter_schema=["env"], steps=["build"]),
            SimpleNamespace(tags=["web"], parameter_schema={"env": 1}, steps=["build"]),
            SimpleNamespace(tags=[1], parameter_schema={}, steps=["build"]),
        ],
    )
    def test_scores_zero_without_raising(self, bad: object) -> None:
        assert similarity.score(WEB, bad) == 0.0
        assert similarity.score(bad, WEB) == 0.0
