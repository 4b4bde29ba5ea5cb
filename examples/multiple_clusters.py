"""Create the same resource in two clusters.

The default cluster comes from `KUBECONFIG` and the second one from
`KUBE_URL_REMOTE` and `KUBE_TOKEN_REMOTE`, eg

  $ export KUBECONFIG=/tmp/kubeconfig-kind.yaml
  $ export KUBE_URL_REMOTE=https://1.2.3.4:6443
  $ export KUBE_TOKEN_REMOTE=secret-token
  $ python examples/multiple_clusters.py

"""
import kubeframe


def main():
    config, err = kubeframe.load_config()
    assert not err
    kubeframe.setup_logging(2)

    manager = kubeframe.KubeResourceManager(config)
    namespace = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "demo"}}

    manager.create_resource_with_wait(namespace)
    with manager.use_context("remote"):
        manager.create_resource_with_wait(namespace)

    # Every cluster context has its own tracking stack.
    with manager.use_context("remote"):
        manager.delete_resources()
    manager.delete_resources()


if __name__ == "__main__":
    main()
