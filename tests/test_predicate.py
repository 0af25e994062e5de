import pytest

from flowci.errors import DefinitionError
from flowci.predicate import And, Equal, Literal, Not, Or, ParamRef, check_exclusive, parse_predicate


def test_parse_parameter_reference():
    p = parse_predicate("<< pipeline.parameters.release_branch >>")
    assert p == ParamRef("release_branch")
    assert p.parameters() == {"release_branch"}
    assert p.evaluate({"release_branch": True})
    assert not p.evaluate({"release_branch": False})


def test_parse_nested_operators():
    p = parse_predicate({"and": [{"not": "<< pipeline.parameters.a >>"}, {"or": [True, "<< pipeline.parameters.b >>"]}]})
    assert isinstance(p, And)
    assert isinstance(p.operands[0], Not)
    assert isinstance(p.operands[1], Or)
    assert p.parameters() == {"a", "b"}
    assert p.evaluate({"a": False, "b": False})
    assert not p.evaluate({"a": True, "b": True})


def test_equal_against_git_branch():
    p = parse_predicate({"equal": ["main", "<< pipeline.git.branch >>"]})
    assert isinstance(p, Equal)
    # git facts are not declared parameters
    assert p.parameters() == set()
    assert p.evaluate({"pipeline.git.branch": "main"})
    assert not p.evaluate({"pipeline.git.branch": "feature/x"})


def test_empty_string_and_missing_are_false():
    assert not Literal("").evaluate({})
    assert not ParamRef("missing").evaluate({})
    assert Literal("yes").evaluate({})


@pytest.mark.parametrize(
    "raw",
    [
        {"and": []},
        {"equal": ["only-one"]},
        {"xor": [True, False]},
        {"and": [True], "or": [False]},
        "<< pipeline.unknown.thing >>",
    ],
)
def test_invalid_conditions_rejected(raw):
    with pytest.raises(DefinitionError):
        parse_predicate(raw)


def test_negated_pair_is_exclusive():
    on = parse_predicate("<< pipeline.parameters.release_branch >>")
    report = check_exclusive({"ci": Not(on), "release_branch": on}, {"release_branch": "boolean"})
    assert report.ok
    assert report.exhaustive and not report.overlapping


def test_overlap_and_gap_detected():
    mode = ParamRef("mode")
    report = check_exclusive(
        {
            "a": Equal((mode, Literal("fast"))),
            "b": Or((Equal((mode, Literal("fast"))), Equal((mode, Literal("slow"))))),
        },
        {"mode": "string"},
    )
    assert not report.ok
    assert report.overlapping
    assert {"mode": "fast", "_workflows": ["a", "b"]} in report.overlaps
    # a value matching none of the literals runs nothing
    assert not report.exhaustive
