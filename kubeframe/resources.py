"""Handlers that map the lifecycle operations onto the Kubernetes REST API.

Every handler manages exactly one resource kind. `KubeResourceType` works for
any kind the cluster knows about and only checks that the resource exists to
decide whether it is ready. The subclasses below know what "ready" means for
their kind, eg a Deployment is ready once all its replicas are.

"""
import abc
import copy
import logging
from typing import Any, Callable, Dict, List

import jsonpatch

from kubeframe import k8s
from kubeframe.dtypes import TIMEOUT, K8sConfig, MetaManifest
from kubeframe.errors import ClusterError, NotFound, UnknownResourceKind
from kubeframe.registry import ResourceTypeRegistry

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")

# Delete dependent objects before the owner disappears.
DELETE_OPTIONS = {
    "apiVersion": "v1",
    "kind": "DeleteOptions",
    "propagationPolicy": "Foreground",
}


def condition_status(obj: Dict[str, Any] | None, ctype: str) -> str | None:
    """Return the status ("True", "False", ...) of condition `ctype` in `obj`."""
    if obj is None:
        return None
    conditions = (obj.get("status") or {}).get("conditions") or []
    for cond in conditions:
        if cond.get("type") == ctype:
            return cond.get("status")
    return None


class ResourceType(abc.ABC):
    """Lifecycle operations for one resource kind.

    Subclasses must set `kind` and implement the abstract methods. The
    defaults of `is_ready` and `is_deleted` only check whether the object
    exists.

    """
    kind: str = ""

    # Readiness budget in seconds for this kind (`None` uses the default).
    readiness_timeout: float | None = None

    @abc.abstractmethod
    def client(self) -> K8sConfig:
        """Return the connection this handler talks to."""

    @abc.abstractmethod
    def create(self, manifest: dict) -> dict:
        """Create `manifest` and return the manifest K8s responded with."""

    @abc.abstractmethod
    def update(self, manifest: dict) -> dict:
        """Overwrite the resource with `manifest`."""

    @abc.abstractmethod
    def delete(self, name: str, namespace: str | None = None) -> None:
        """Delete the resource."""

    @abc.abstractmethod
    def get(self, name: str, namespace: str | None = None) -> dict:
        """Return the current manifest of the resource."""

    @abc.abstractmethod
    def replace(self, name: str, namespace: str | None,
                editor: Callable[[dict], None]) -> dict:
        """Apply `editor` to the live resource and write it back."""

    def is_ready(self, obj: Dict[str, Any] | None) -> bool:
        return obj is not None

    def is_deleted(self, obj: Dict[str, Any] | None) -> bool:
        return obj is None

    def fetch(self, name: str, namespace: str | None = None) -> Dict[str, Any] | None:
        """Return the current manifest of the resource or `None` if it is gone."""
        try:
            return self.get(name, namespace)
        except NotFound:
            return None


class KubeResourceType(ResourceType):
    """Generic handler for resources that K8s serves via its REST API."""
    api_version: str = ""

    def __init__(self, k8sconfig: K8sConfig, kind: str | None = None,
                 api_version: str = ""):
        self.k8sconfig = k8sconfig
        self.kind = kind or self.kind
        self.api_version = api_version or self.api_version
        assert self.kind, "Resource type requires a kind"

    def __repr__(self):
        return f"{type(self).__name__}(kind={self.kind!r})"

    def client(self) -> K8sConfig:
        return self.k8sconfig

    def _url(self, method: str, meta: MetaManifest) -> str:
        """Return the K8s API URL for the resource in `meta`."""
        apis = self.k8sconfig.apis
        if meta.kind not in self.k8sconfig.kinds:
            # CRDs may have added the kind after we compiled the endpoints.
            logit.info(f"Refreshing API endpoints of {self.k8sconfig.name} for {meta.kind}")
            k8s.discover_endpoints(self.k8sconfig)
            if meta.kind not in self.k8sconfig.kinds:
                raise UnknownResourceKind(meta.kind)

        # Namespaced resources without an explicit namespace live in "default".
        res = apis.get((meta.kind, meta.apiVersion)) or apis.get((meta.kind, ""))
        if meta.namespace is None and res is not None and res.namespaced:
            meta = meta._replace(namespace="default")

        try:
            return k8s.resource_url(self.k8sconfig, meta)
        except ValueError as err:
            raise ClusterError(method, "", -1, {"message": str(err)})

    def _meta(self, name: str | None, namespace: str | None,
              api_version: str = "") -> MetaManifest:
        return MetaManifest(api_version or self.api_version, self.kind, namespace, name)

    def create(self, manifest: dict) -> dict:
        meta = k8s.make_meta(manifest)
        url = self._url("POST", meta._replace(name=""))
        return k8s.call(self.k8sconfig, "POST", url, manifest, ok=(200, 201, 202))

    def update(self, manifest: dict) -> dict:
        meta = k8s.make_meta(manifest)
        url = self._url("PUT", meta)
        return k8s.call(self.k8sconfig, "PUT", url, manifest, ok=(200, 201))

    def delete(self, name: str, namespace: str | None = None) -> None:
        url = self._url("DELETE", self._meta(name, namespace))
        k8s.call(self.k8sconfig, "DELETE", url, DELETE_OPTIONS, ok=(200, 202))

    def get(self, name: str, namespace: str | None = None) -> dict:
        url = self._url("GET", self._meta(name, namespace))
        return k8s.call(self.k8sconfig, "GET", url)

    def replace(self, name: str, namespace: str | None,
                editor: Callable[[dict], None]) -> dict:
        """Fetch the resource, let `editor` modify it and write it back.

        The `editor` must modify the manifest in place. Nothing happens if it
        leaves the manifest unchanged. Otherwise, the resource is overwritten
        with the edited manifest. The edit still contains the
        `resourceVersion` we read, which means K8s will reject the update with
        a 409 (`Conflict`) if someone else changed the resource in between.

        """
        live = self.get(name, namespace)
        edited = copy.deepcopy(live)
        editor(edited)

        patch = jsonpatch.make_patch(live, edited)
        if len(patch.patch) == 0:
            logit.debug(f"No changes for {self.kind} {namespace}/{name}")
            return live

        logit.debug(f"Replacing {self.kind} {namespace}/{name}: {patch.to_string()}")
        return self.update(edited)


# -----------------------------------------------------------------------------
#                              Kind specific handlers
# -----------------------------------------------------------------------------
class NamespaceType(KubeResourceType):
    kind = "Namespace"

    def is_ready(self, obj):
        return obj is not None and obj.get("status", {}).get("phase") == "Active"


class DeploymentType(KubeResourceType):
    kind = "Deployment"

    def is_ready(self, obj):
        if obj is None:
            return False
        wanted = obj.get("spec", {}).get("replicas", 1)
        status = obj.get("status", {})

        # Wait until the controller has seen the latest spec.
        generation = obj.get("metadata", {}).get("generation", 0)
        if status.get("observedGeneration", generation) < generation:
            return False
        return status.get("readyReplicas", 0) >= wanted and \
            status.get("updatedReplicas", wanted) >= wanted


class StatefulSetType(KubeResourceType):
    kind = "StatefulSet"

    def is_ready(self, obj):
        if obj is None:
            return False
        wanted = obj.get("spec", {}).get("replicas", 1)
        return obj.get("status", {}).get("readyReplicas", 0) >= wanted


class JobType(KubeResourceType):
    kind = "Job"
    readiness_timeout = TIMEOUT

    def is_ready(self, obj):
        if obj is None:
            return False
        if obj.get("status", {}).get("succeeded", 0) > 0:
            return True
        return condition_status(obj, "Complete") == "True"


class PodType(KubeResourceType):
    kind = "Pod"

    def is_ready(self, obj):
        return condition_status(obj, "Ready") == "True"


class CustomResourceDefinitionType(KubeResourceType):
    kind = "CustomResourceDefinition"

    def is_ready(self, obj):
        return condition_status(obj, "Established") == "True"


class SubscriptionType(KubeResourceType):
    kind = "Subscription"
    readiness_timeout = TIMEOUT

    def is_ready(self, obj):
        return obj is not None and \
            obj.get("status", {}).get("state") == "AtLatestKnown"


class CatalogSourceType(KubeResourceType):
    kind = "CatalogSource"

    def is_ready(self, obj):
        if obj is None:
            return False
        state = obj.get("status", {}).get("connectionState", {})
        return state.get("lastObservedState") == "READY"


class InstallPlanType(KubeResourceType):
    kind = "InstallPlan"

    def is_ready(self, obj):
        return obj is not None and obj.get("status", {}).get("phase") == "Complete"


# Kinds without special readiness semantics.
GENERIC_KINDS = (
    "ServiceAccount",
    "ConfigMap",
    "Secret",
    "Service",
    "Role",
    "RoleBinding",
    "ClusterRole",
    "ClusterRoleBinding",
    "Lease",
    "NetworkPolicy",
    "ValidatingWebhookConfiguration",
    "OperatorGroup",
)

SPECIAL_KINDS = (
    NamespaceType,
    DeploymentType,
    StatefulSetType,
    JobType,
    PodType,
    CustomResourceDefinitionType,
    SubscriptionType,
    CatalogSourceType,
    InstallPlanType,
)


def default_handlers(k8sconfig: K8sConfig) -> List[ResourceType]:
    """Return a handler for each built-in kind."""
    handlers: List[ResourceType] = [cls(k8sconfig) for cls in SPECIAL_KINDS]
    handlers += [KubeResourceType(k8sconfig, kind) for kind in GENERIC_KINDS]
    return handlers


def default_registry(k8sconfig: K8sConfig) -> ResourceTypeRegistry:
    """Return a registry with handlers for all built-in kinds."""
    return ResourceTypeRegistry(*default_handlers(k8sconfig))
