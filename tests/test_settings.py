import pytest

from flowci.settings import DEFAULT_STORAGE_DIR, Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.max_concurrency == 4
    assert s.quiet_period == 600
    assert s.job_timeout == 5 * 60 * 60
    assert s.provision_retries == 3
    assert s.storage_root == DEFAULT_STORAGE_DIR
    assert s.backend == "local"


def test_from_env():
    s = Settings.from_env(
        {
            "FLOWCI_MAX_CONCURRENCY": "8",
            "FLOWCI_QUIET_PERIOD": "30",
            "FLOWCI_BACKEND": "docker",
            "FLOWCI_STORAGE_ROOT": "/var/lib/flowci",
        }
    )
    assert (s.max_concurrency, s.quiet_period, s.backend, s.storage_root) == (8, 30.0, "docker", "/var/lib/flowci")


def test_bad_env_values():
    with pytest.raises(ValueError, match="FLOWCI_MAX_CONCURRENCY"):
        Settings.from_env({"FLOWCI_MAX_CONCURRENCY": "many"})
    with pytest.raises(ValueError, match="max_concurrency"):
        Settings.from_env({"FLOWCI_MAX_CONCURRENCY": "0"})
    with pytest.raises(ValueError, match="backend"):
        Settings.from_env({"FLOWCI_BACKEND": "k8s"})


def test_overrides_skip_unset_values():
    s = Settings().with_overrides(max_concurrency=None, backend="docker")
    assert s.max_concurrency == 4
    assert s.backend == "docker"
    with pytest.raises(TypeError):
        Settings().with_overrides(colour="blue")
