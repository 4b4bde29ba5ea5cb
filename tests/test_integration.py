import uuid
from pathlib import Path

import pytest

import kubeframe.k8s as k8s
from kubeframe.dtypes import Config
from kubeframe.errors import AlreadyExists
from kubeframe.manager import KubeResourceManager

from .test_helpers import KIND_KUBECONFIG, kind_available, mk_cm, mk_ns


@pytest.fixture
def kind_manager():
    config = Config(
        kubeconfig=Path(KIND_KUBECONFIG),
        kubecontext=None,
        poll_interval=0.5,
        poll_interval_delete=0.5,
        timeout_readiness=60,
        timeout_deletion=120,
    )
    man = KubeResourceManager(config)
    yield man

    # Leave nothing behind if a test fails half way.
    man.delete_resources()


@pytest.mark.skipif(not kind_available(), reason="No Integration Test Cluster")
class TestKind:
    def test_cluster_config(self):
        cfg = k8s.cluster_config(Path(KIND_KUBECONFIG), None)
        assert cfg.version
        assert {"Namespace", "ConfigMap", "Deployment"}.issubset(cfg.kinds)

    def test_create_and_sweep(self, kind_manager):
        ns = f"kubeframe-{uuid.uuid4().hex[:8]}"
        kind_manager.create_resource_with_wait(mk_ns(ns), mk_cm("foo", ns), mk_cm("bar", ns))
        assert len(kind_manager.tracked()) == 3

        handler = kind_manager.registry().resolve("ConfigMap")
        assert handler.get("foo", ns)["data"] == {"key": "value"}
        with pytest.raises(AlreadyExists):
            kind_manager.create_resource_with_wait(mk_cm("foo", ns))

        kind_manager.delete_resources()
        assert handler.fetch("foo", ns) is None
        assert kind_manager.registry().resolve("Namespace").fetch(ns, None) is None

    def test_create_or_update(self, kind_manager):
        ns = f"kubeframe-{uuid.uuid4().hex[:8]}"
        kind_manager.create_resource_with_wait(mk_ns(ns))
        kind_manager.create_or_update_resource_with_wait(mk_cm("foo", ns, {"a": "1"}))
        kind_manager.create_or_update_resource_with_wait(mk_cm("foo", ns, {"a": "2"}))

        handler = kind_manager.registry().resolve("ConfigMap")
        assert handler.get("foo", ns)["data"] == {"a": "2"}
        assert len(kind_manager.tracked()) == 2

        def editor(manifest):
            manifest["data"]["b"] = "3"

        kind_manager.replace_resource_with_retries(mk_cm("foo", ns), editor)
        assert handler.get("foo", ns)["data"] == {"a": "2", "b": "3"}
