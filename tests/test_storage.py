import pytest

from flowci.errors import StorageError
from flowci.storage import FileBlobStore, MemoryBlobStore


@pytest.fixture(params=["file", "memory"])
def store(request, tmp_path):
    if request.param == "file":
        return FileBlobStore(tmp_path / "blobs")
    return MemoryBlobStore()


def test_put_get_list(store):
    store.put("artifacts/inv/ci/test/report.xml", b"<xml/>")
    store.put("artifacts/inv/ci/lint/out.txt", b"ok")
    store.put("workspaces/inv/ci.tar.gz", b"tgz")

    assert store.get("artifacts/inv/ci/test/report.xml") == b"<xml/>"
    assert store.exists("workspaces/inv/ci.tar.gz")
    assert store.list("artifacts/inv/") == [
        "artifacts/inv/ci/lint/out.txt",
        "artifacts/inv/ci/test/report.xml",
    ]


def test_delete_prefix_leaves_other_keys(store):
    store.put("workspaces/a/ci.tar.gz", b"1")
    store.put("workspaces/b/ci.tar.gz", b"2")
    store.delete_prefix("workspaces/a/")
    assert store.list("workspaces/") == ["workspaces/b/ci.tar.gz"]


def test_missing_blob(store):
    with pytest.raises(StorageError, match="No such blob"):
        store.get("artifacts/none")


@pytest.mark.parametrize("key", ["", "/abs", "a/../b", "a//b", "./a"])
def test_rejects_unsafe_keys(store, key):
    with pytest.raises(StorageError, match="Invalid storage key"):
        store.put(key, b"x")


def test_file_store_survives_reopen(tmp_path):
    FileBlobStore(tmp_path).put("artifacts/inv/ci/build/app", b"bin")
    assert FileBlobStore(tmp_path).get("artifacts/inv/ci/build/app") == b"bin"


def test_failed_put_leaves_no_temp_file(tmp_path, monkeypatch):
    store = FileBlobStore(tmp_path)

    def fail(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("flowci.storage.os.replace", fail)
    with pytest.raises(StorageError, match="disk full"):
        store.put("artifacts/inv/ci/build/app", b"bin")

    assert list((tmp_path / "artifacts" / "inv" / "ci" / "build").iterdir()) == []
    assert store.list() == []
