import pytest

from flowci.errors import TriggerError
from flowci.model import Parameter, TriggerContext
from flowci.params import coerce_value, eligible_workflows, resolve_parameters

DECLARED = {
    "release_branch": Parameter("release_branch", "boolean", default=False),
    "target": Parameter("target", "string", default="debug"),
}

PIPELINE_YAML = """
    version: 2.1
    parameters:
      release_branch:
        type: boolean
        default: false
    jobs:
      build:
        docker:
          - image: alpine
        steps:
          - run: echo build
    workflows:
      version: 2
      ci:
        when:
          not: << pipeline.parameters.release_branch >>
        jobs: [build]
      release_branch:
        when: << pipeline.parameters.release_branch >>
        jobs: [build]
      always:
        jobs: [build]
"""


def test_defaults_apply_when_not_overridden():
    assert resolve_parameters(DECLARED) == {"release_branch": False, "target": "debug"}


def test_override_wins():
    assert resolve_parameters(DECLARED, {"target": "release"})["target"] == "release"


def test_unknown_override_rejected():
    with pytest.raises(TriggerError) as exc:
        resolve_parameters(DECLARED, {"nope": True})
    assert "nope" in exc.value.message


def test_type_mismatch_rejected():
    with pytest.raises(TriggerError):
        resolve_parameters(DECLARED, {"release_branch": "true"})


def test_cli_strings_coerced_for_booleans():
    assert resolve_parameters(DECLARED, {"release_branch": "true"}, coerce=True)["release_branch"] is True
    assert coerce_value(DECLARED["release_branch"], "off", coerce=True) is False
    with pytest.raises(TriggerError):
        coerce_value(DECLARED["release_branch"], "maybe", coerce=True)


def test_missing_required_parameter():
    declared = {"token": Parameter("token", "string")}
    with pytest.raises(TriggerError):
        resolve_parameters(declared)


def test_eligible_workflows_follow_predicates(load):
    pipeline = load(PIPELINE_YAML)
    names = lambda ws: [w.name for w in ws]  # noqa: E731

    default = resolve_parameters(pipeline.parameters)
    assert names(eligible_workflows(pipeline, default)) == ["ci", "always"]

    release = resolve_parameters(pipeline.parameters, {"release_branch": True})
    assert names(eligible_workflows(pipeline, release, TriggerContext(branch="x"))) == ["release_branch", "always"]
