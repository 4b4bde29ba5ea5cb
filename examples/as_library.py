"""Use Kubeframe in a test suite.

This example creates a namespace with two ConfigMaps, waits until they exist,
then updates one of them and finally tears everything down again.

Start a KinD cluster, then run this script from the parent directory like so:

  $ KUBECONFIG=/tmp/kubeconfig-kind.yaml python examples/as_library.py

"""
import kubeframe
from kubeframe.callbacks import label_callback


def configmap(name: str, namespace: str, data: dict) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": data,
    }


def main():
    # ----------------------------------------------------------------------
    #                                 Setup
    # ----------------------------------------------------------------------
    # Read `config.yaml` (if it exists) and the KUBE* environment variables.
    config, err = kubeframe.load_config()
    assert not err

    # Optional: Set log level (0 = ERROR, 1 = WARNING, 2 = INFO, 3 = DEBUG).
    kubeframe.setup_logging(config.log_level)

    manager = kubeframe.KubeResourceManager(config)

    # Label every resource we create to find leftovers with `kubectl -l`.
    manager.add_create_callback(label_callback(manager, {"created-by": "kubeframe"}))

    # ----------------------------------------------------------------------
    #                     Create, update and tear down
    # ----------------------------------------------------------------------
    namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "demo"}}

    # This is what a pytest fixture would do around every test.
    manager.set_test_context("examples/as_library.py::main")
    try:
        manager.create_resource_with_wait(
            namespace,
            configmap("one", "demo", {"foo": "bar"}),
            configmap("two", "demo", {"foo": "bar"}),
        )

        # Update the first ConfigMap. Calling this twice is fine.
        manager.create_or_update_resource_with_wait(configmap("one", "demo", {"foo": "new"}))
        manager.print_current_resources()
    finally:
        # Delete the ConfigMaps first and the namespace last.
        manager.delete_resources()
        manager.clean_test_context()


if __name__ == "__main__":
    main()
