import unittest.mock as mock
from typing import Generator

import httpx
import pytest

import kubeframe.k8s
import kubeframe.logs
import kubeframe.wait
from kubeframe.dtypes import Config, K8sConfig
from kubeframe.manager import KubeResourceManager

from .test_helpers import FakeCluster, fake_types, k8s_apis


def pytest_configure(*args, **kwargs):
    """Pytest calls this hook on startup."""
    # Set log level to DEBUG for all unit tests.
    kubeframe.logs.setup_logging(9)


@pytest.fixture
def k8sconfig() -> Generator[K8sConfig, None, None]:
    # Return a valid K8sConfig with a subsection of API endpoints.
    cfg = K8sConfig(
        url="https://k8s.example.com",
        name="unittest",
        version="1.29",
        client=httpx.Client(),
        apis={},
        kinds=set(),
    )

    # The set of API endpoints we can use in the tests.
    cfg.apis.update(k8s_apis(cfg))

    # The set of canonical K8s resources we support.
    cfg.kinds.update({kind for kind, _ in cfg.apis})

    # Short-circuit the retry delays of the HTTP client.
    with mock.patch.object(kubeframe.k8s, "_mysleep"):
        yield cfg


@pytest.fixture
def config(tmp_path) -> Config:
    """Return a `Config` with short timeouts for the unit tests."""
    return Config(
        kubeconfig=tmp_path / "kubeconf",
        poll_interval=0.01,
        poll_interval_delete=0.01,
        timeout_readiness=1,
        timeout_deletion=1,
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def manager(config, k8sconfig, cluster) -> Generator[KubeResourceManager, None, None]:
    """Return a manager whose default context talks to the in-memory `cluster`."""
    man = KubeResourceManager(config)
    man.add_context("default", k8sconfig)
    man.set_resource_types(*fake_types(cluster))
    yield man


@pytest.fixture
def nosleep():
    """Replace the sleep of the blocking wait with a mock."""
    with mock.patch.object(kubeframe.wait, "_mysleep") as m:
        yield m
