from __future__ import annotations

import pytest

from notiflow.services.notifications.segments import (
    Segment,
    grade_matches,
    grade_patterns,
    normalize_grades,
)


def test_segment_from_json_defaults_for_non_objects() -> None:
    for raw in (None, "all", 42, ["parent"]):
        assert Segment.from_json(raw) == Segment()


def test_segment_ignores_non_list_filters() -> None:
    segment = Segment.from_json({"roles": "parent", "grades": None, "user_ids": ["u1", None]})
    assert segment.roles == []
    assert segment.grades == []
    assert segment.user_ids == ["u1"]


def test_segment_accepts_grade_levels_alias() -> None:
    segment = Segment.from_json({"grade_levels": ["3", "K"]})
    assert segment.grades == ["3", "K"]
    assert Segment.from_json({"grades": ["5"], "grade_levels": ["3"]}).grades == ["5"]


def test_segment_include_disabled_is_truthy() -> None:
    assert Segment.from_json({"include_disabled": 1}).include_disabled is True
    assert Segment.from_json({}).include_disabled is False


def test_normalize_grades_drops_blanks() -> None:
    assert normalize_grades([" 3 ", "", None, "K"]) == ["3", "k"]


@pytest.mark.parametrize(
    "candidate",
    ["3", "Grade 3", "grade 3, grade 4", "3rd", "2nd;3rd", "K,3", "3 ", "grades: 3"],
)
def test_grade_matches_delimited_forms(candidate: str) -> None:
    assert grade_matches(candidate, ["3"])


@pytest.mark.parametrize("candidate", ["13", "30", "123rd", "", None, "grade 10"])
def test_grade_does_not_match_inside_other_numbers(candidate: str | None) -> None:
    assert not grade_matches(candidate, ["3"])


def test_grade_patterns_escape_input() -> None:
    patterns = grade_patterns("1.5")
    assert all(r"1\.5" in pattern for pattern in patterns)
    assert grade_matches("1.5", ["1.5"])
    assert not grade_matches("105", ["1.5"])
