import textwrap

import pytest

from flowci.dsl import (
    attach_workspace,
    boolean,
    build,
    job,
    matrix,
    persist_to_workspace,
    pipeline,
    ref,
    sh,
    store_artifacts,
    string,
    workflow,
)
from flowci.errors import DefinitionError
from flowci.loader import load_pipeline
from flowci.model import REASON_PARAMETER_GUARD, SKIPPED, SUCCESS, RunStep, TriggerContext


def test_job_defaults():
    j = job("lint", sh("Lint", "ruff check ."), env={"RETRIES": 3})
    assert j.executor.kind == "docker"
    assert j.executor.image == "python:3.12"
    assert j.environment == {"RETRIES": "3"}
    assert isinstance(j.steps[0], RunStep)

    m = job("bench", sh("Bench", "make bench"), machine=True, resource_class="xlarge")
    assert (m.executor.kind, m.executor.resource_class) == ("machine", "xlarge")


def test_job_needs_steps():
    with pytest.raises(DefinitionError, match="at least one step") as exc:
        job("empty")
    assert exc.value.location == "jobs.empty"
    with pytest.raises(DefinitionError, match="no steps"):
        build("empty").build()


def test_builder():
    j = (
        build("release")
        .on_machine(resource_class="large")
        .define_step("Package", "make dist", timeout=60)
        .add(persist_to_workspace(".", "dist"))
        .with_env(STAGE="prod")
        .build()
    )
    assert j.executor.kind == "machine"
    assert j.steps[0].timeout == 60
    assert j.persists_workspace
    assert j.environment == {"STAGE": "prod"}

    d = build("docs").on_docker("node:20", resource_class="small").define_step("Docs", "npm run docs").build()
    assert (d.executor.kind, d.executor.image, d.executor.resource_class) == ("docker", "node:20", "small")


def test_matrix_refs():
    test = job("test", sh("Test", "pytest"))
    refs = matrix("py", ["3.11", "3.12"]).refs(lambda v: ref(test, name=f"test-py{v}"))
    assert [r.name for r in refs] == ["test-py3.11", "test-py3.12"]
    assert {r.job for r in refs} == {"test"}


def test_pipeline_validates():
    a = job("a", sh("A", "true"))
    with pytest.raises(DefinitionError, match="missing job"):
        pipeline(jobs=[a], workflows=[workflow("ci", ref(a, requires=["ghost"]))])
    with pytest.raises(DefinitionError, match="Duplicate job") as exc:
        pipeline(jobs=[a, a], workflows=[workflow("ci", a)])
    assert exc.value.location == "jobs.a"
    with pytest.raises(DefinitionError, match="Duplicate workflow") as exc:
        pipeline(jobs=[a], workflows=[workflow("ci", a), workflow("ci", a)])
    assert exc.value.location == "workflows.ci"
    with pytest.raises(DefinitionError, match="Duplicate parameter") as exc:
        pipeline(jobs=[a], workflows=[workflow("ci", a)], parameters=[string("env"), string("env")])
    assert exc.value.location == "parameters.env"


def test_parameter_default_must_match_type():
    a = job("a", sh("A", "true"))
    with pytest.raises(DefinitionError, match="Default does not match type") as exc:
        pipeline(jobs=[a], workflows=[workflow("ci", a)], parameters=[boolean("flag", default="yes")])
    assert exc.value.location == "parameters.flag"
    with pytest.raises(DefinitionError, match="Default does not match type"):
        pipeline(jobs=[a], workflows=[workflow("ci", a)], parameters=[string("env", default=3)])

    p = pipeline(jobs=[a], workflows=[workflow("ci", a)], parameters=[boolean("flag", default=True)])
    assert p.parameters["flag"].default is True


def test_dsl_pipeline_runs(make_orchestrator):
    producer = job(
        "produce",
        sh("Make", "mkdir -p out && echo data > out/d.txt"),
        persist_to_workspace(".", "out"),
        store_artifacts("out/d.txt"),
    )
    consumer = job("consume", attach_workspace("."), sh("Read", "cat out/d.txt"))
    deploy = job("deploy", sh("Deploy", "echo deploy"))

    p = pipeline(
        parameters=[boolean("deploy", default=False)],
        jobs=[producer, consumer, deploy],
        workflows=[
            workflow(
                "ci",
                producer,
                ref(consumer, requires=["produce"]),
                ref(deploy, requires=["consume"], when="<< pipeline.parameters.deploy >>", only="main"),
            )
        ],
    )
    orch, sink = make_orchestrator(p)
    report = orch.run(TriggerContext(branch="main"))

    assert report.job_run("ci", "consume").status == SUCCESS
    assert "data" in sink.text("ci/consume")
    deploy_run = report.job_run("ci", "deploy")
    assert (deploy_run.status, deploy_run.reason) == (SKIPPED, REASON_PARAMETER_GUARD)


def test_load_python_pipeline(tmp_path):
    path = tmp_path / "flowci_pipeline.py"
    path.write_text(
        textwrap.dedent(
            """
            from flowci.dsl import job, pipeline, sh, workflow

            build = job("build", sh("Build", "make"))
            PIPELINE = pipeline(jobs=[build], workflows=[workflow("main", build)])
            """
        )
    )
    p = load_pipeline(path)
    assert list(p.jobs) == ["build"]
    assert p.source == str(path.resolve())


def test_python_pipeline_must_define_one(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("x = 1\n")
    with pytest.raises(TypeError, match="PIPELINE"):
        load_pipeline(path)
