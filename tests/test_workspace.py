import pytest

from flowci.backends import LocalBackend, resource_class
from flowci.errors import ArtifactError, ProvisioningError, WorkspaceError
from flowci.model import ExecutorSpec
from flowci.storage import MemoryBlobStore
from flowci.workspace import ArtifactStore, WorkspaceManager


@pytest.fixture
def backend():
    return LocalBackend(grace=1.0)


@pytest.fixture
def env(backend):
    e = backend.create(ExecutorSpec(kind="docker", image="x"), resource_class("medium"))
    yield e
    e.destroy()


@pytest.fixture
def other_env(backend):
    e = backend.create(ExecutorSpec(kind="docker", image="x"), resource_class("medium"))
    yield e
    e.destroy()


def test_persist_then_attach_in_another_environment(env, other_env):
    (env.project / "out" / "lib").mkdir(parents=True)
    (env.project / "out" / "lib" / "a.so").write_text("binary")
    (env.project / "notes.txt").write_text("not persisted")

    ws = WorkspaceManager(MemoryBlobStore())
    ws.persist(env, invocation_id="inv1", workflow="ci", root=".", paths=["out"])
    assert ws.exists("inv1", "ci")

    names = ws.attach(other_env, invocation_id="inv1", workflow="ci", at="workspace")
    assert names == ["out/lib/a.so"]
    assert (other_env.project / "workspace" / "out" / "lib" / "a.so").read_text() == "binary"
    assert not (other_env.project / "workspace" / "notes.txt").exists()


def test_workspaces_are_scoped_per_workflow_and_discarded(env, other_env):
    (env.project / "f").write_text("x")
    ws = WorkspaceManager(MemoryBlobStore())
    ws.persist(env, invocation_id="inv1", workflow="ci", root=".", paths=["f"])

    with pytest.raises(WorkspaceError, match="No workspace"):
        ws.attach(other_env, invocation_id="inv1", workflow="nightly", at=".")

    ws.discard("inv1")
    assert not ws.exists("inv1", "ci")


def test_persist_missing_root(env):
    ws = WorkspaceManager(MemoryBlobStore())
    with pytest.raises(WorkspaceError, match="Could not snapshot"):
        ws.persist(env, invocation_id="inv1", workflow="ci", root="missing", paths=["x"])


def test_store_directory_artifact(env):
    (env.project / "reports").mkdir()
    (env.project / "reports" / "junit.xml").write_text("<testsuite/>")
    (env.project / "reports" / "coverage.txt").write_text("97%")

    store = ArtifactStore(MemoryBlobStore())
    stored = store.store_path(env, invocation_id="inv1", job_run="ci/test", path="reports")
    assert sorted(a.name for a in stored) == ["reports/coverage.txt", "reports/junit.xml"]

    assert store.list("inv1", "ci/test") == ["reports/coverage.txt", "reports/junit.xml"]
    assert store.get("inv1", "ci/test", "reports/junit.xml") == b"<testsuite/>"


def test_store_single_file_under_destination(env):
    (env.project / "dist").mkdir()
    (env.project / "dist" / "app.whl").write_bytes(b"wheel")

    store = ArtifactStore(MemoryBlobStore())
    stored = store.store_path(
        env, invocation_id="inv1", job_run="ci/build", path="dist/app.whl", destination="packages/app.whl"
    )
    assert [(a.name, a.size) for a in stored] == [("packages/app.whl", 5)]
    assert store.list("inv1") == ["ci/build/packages/app.whl"]


def test_store_working_directory_contents(env):
    (env.project / "dist").mkdir()
    (env.project / "dist" / "a.txt").write_text("hi")

    store = ArtifactStore(MemoryBlobStore())
    stored = store.store_path(env, invocation_id="inv1", job_run="ci/j", path=".")
    assert [a.name for a in stored] == ["dist/a.txt"]

    stored = store.store_path(env, invocation_id="inv2", job_run="ci/j", path="./", destination="tree")
    assert [a.name for a in stored] == ["tree/dist/a.txt"]
    assert store.get("inv2", "ci/j", "tree/dist/a.txt") == b"hi"

    stored = store.store_path(env, invocation_id="inv3", job_run="ci/j", path="./dist/")
    assert [a.name for a in stored] == ["dist/a.txt"]


def test_store_home_directory_contents(env):
    (env.project / "a.txt").write_text("hi")

    store = ArtifactStore(MemoryBlobStore())
    stored = store.store_path(env, invocation_id="inv1", job_run="ci/j", path="~")
    assert [a.name for a in stored] == ["project/a.txt"]


def test_missing_artifact(env):
    store = ArtifactStore(MemoryBlobStore())
    with pytest.raises(ArtifactError):
        store.store_path(env, invocation_id="inv1", job_run="ci/build", path="nothing-here")
    with pytest.raises(ArtifactError, match="not found"):
        store.get("inv1", "ci/build", "nothing-here")


def test_machine_environments_are_exclusive():
    backend = LocalBackend(machine_slots=1, grace=1.0, lease_timeout=0.1)
    spec = ExecutorSpec(kind="machine")
    first = backend.create(spec, resource_class("medium"))
    try:
        with pytest.raises(ProvisioningError, match="No machine available"):
            backend.create(spec, resource_class("medium"))
    finally:
        first.destroy()
    second = backend.create(spec, resource_class("medium"))
    second.destroy()
