import logging
from typing import TYPE_CHECKING, Any, Dict, List

from kubeframe.dtypes import MetaManifest
from kubeframe.errors import UnknownResourceKind

if TYPE_CHECKING:
    from kubeframe.resources import ResourceType

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")


class ResourceTypeRegistry:
    """Map resource kinds like "Deployment" to the handler for that kind."""
    def __init__(self, *handlers: "ResourceType"):
        self._handlers: Dict[str, "ResourceType"] = {}
        for handler in handlers:
            self.register(handler)

    def __contains__(self, kind: str) -> bool:
        return kind in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, handler: "ResourceType") -> None:
        """Add `handler` under its `kind` and replace any previous one."""
        if handler.kind in self._handlers:
            logit.debug(f"Replacing resource type for <{handler.kind}>")
        self._handlers[handler.kind] = handler

    def unregister(self, kind: str) -> None:
        self._handlers.pop(kind, None)

    def kinds(self) -> List[str]:
        return sorted(self._handlers)

    def resolve(self, obj: Any) -> "ResourceType":
        """Return the handler for `obj`.

        The `obj` may be a kind string, a manifest or a `MetaManifest`. Raise
        `UnknownResourceKind` if no handler was registered for the kind.

        """
        if isinstance(obj, MetaManifest):
            kind = obj.kind
        elif isinstance(obj, dict):
            kind = obj.get("kind")
        else:
            kind = obj

        try:
            return self._handlers[kind]
        except (KeyError, TypeError):
            raise UnknownResourceKind(kind)
