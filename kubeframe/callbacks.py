"""Ready-made create and delete callbacks.

Register them with `KubeResourceManager.add_create_callback` or
`add_delete_callback`. The manager calls them with the `MetaManifest` of
every resource it created or deleted.

Example:

    manager.add_create_callback(label_callback(manager, {"team": "qa"}))

"""
import logging
from typing import TYPE_CHECKING, Callable, Dict

from kubeframe.dtypes import MetaManifest
from kubeframe.logs import format_resource

if TYPE_CHECKING:
    from kubeframe.manager import KubeResourceManager

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")


def log_callback(op: str, level: int = logging.INFO) -> Callable[[MetaManifest], None]:
    """Return a callback that logs the resource."""
    def _log(meta: MetaManifest) -> None:
        logit.log(level, format_resource(op, meta))
    return _log


def label_callback(manager: "KubeResourceManager",
                   labels: Dict[str, str]) -> Callable[[MetaManifest], None]:
    """Return a create callback that adds `labels` to each new resource.

    The labels make it easy to find leftovers of a test run with eg
    `kubectl get all -l <key>=<value>`.

    """
    def _edit(manifest: dict) -> None:
        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("labels", {}).update(labels)

    def _label(meta: MetaManifest) -> None:
        handler = manager.registry().resolve(meta)
        handler.replace(meta.name, meta.namespace, _edit)
    return _label
