import enum
from pathlib import Path
from typing import (
    TYPE_CHECKING, Any, Callable, Dict, NamedTuple, Set, Tuple,
)

import httpx
from pydantic import BaseModel, Field, field_validator
from typing_extensions import Annotated

if TYPE_CHECKING:
    from kubeframe.registry import ResourceTypeRegistry

# Name of the cluster context the manager uses unless told otherwise.
DEFAULT_CONTEXT_NAME = "default"

# Name of the test scope for threads that never called `set_test_context`.
DEFAULT_SCOPE = "global"

# Poll intervals and timeouts in seconds.
POLL_INTERVAL_LONG = 15.0
POLL_INTERVAL_MEDIUM = 10.0
POLL_INTERVAL_SHORT = 5.0
POLL_INTERVAL_1_SEC = 1.0
TIMEOUT_SHORT = 3 * 60.0
TIMEOUT_MEDIUM = 5 * 60.0
TIMEOUT = 10 * 60.0


# -----------------------------------------------------------------------------
#                                  Kubernetes
# -----------------------------------------------------------------------------
class MetaManifest(NamedTuple):
    """Minimum amount of information to uniquely identify a K8s resource.

    The primary purpose of this tuple is to provide an immutable UUID that
    we can use as keys in dictionaries and sets.

    """
    apiVersion: str
    kind: str
    namespace: str | None
    name: str | None

    @property
    def key(self) -> Tuple[str, str | None, str | None]:
        """Identity of the resource irrespective of its API version."""
        return (self.kind, self.namespace, self.name)


class K8sResource(NamedTuple):
    """Describe a specific K8s resource kind."""
    apiVersion: str   # "batch/v1beta1" or "extensions/v1beta1".
    kind: str         # "Deployment" (as specified in manifest)
    name: str         # "deployment" (usually lower case version of above)
    namespaced: bool  # Whether or not the resource is namespaced.
    url: str          # API endpoint, eg "k8s-host.com/api/v1/pods".


class K8sConfig(NamedTuple):
    """Everything we need to know to connect and authenticate with Kubernetes."""
    # Kubernetes URL, version and name.
    url: str = ""
    name: str = ""
    version: str = ""

    # Bearer token (eg service accounts and credential plugins).
    token: str = ""

    # Certificate authority for self signed certificates.
    cadata: str | None = None
    cert: Tuple[Path, Path] | None = None
    headers: Dict[str, str] = {}

    # HttpX client to access the cluster. Will be replaced with a properly
    # configured client in `k8s.connect`.
    client: httpx.Client = httpx.Client()

    # Kubernetes API endpoints (see `k8s.discover_endpoints`).
    apis: Dict[Tuple[str, str], K8sResource] = {}

    # The set of supported K8s resource kinds, eg {"Deployment", "Service"}.
    kinds: Set[str] = set()


# -----------------------------------------------------------------------------
#                              Lifecycle Tracking
# -----------------------------------------------------------------------------
class LifecycleEntry(NamedTuple):
    """One record on the tracking stack of the resource manager.

    Resource entries only store the `meta` descriptor of what to tear down and
    the manager dispatches it through the registry during the sweep. Entries
    pushed via `KubeResourceManager.push_action` carry an explicit `action`
    instead.

    """
    uid: int
    meta: MetaManifest | None
    manifest: Dict[str, Any] | None = None
    action: Callable[[], None] | None = None


class ClusterContext(NamedTuple):
    """A named cluster, its client and the handlers bound to that client."""
    name: str
    k8sconfig: K8sConfig
    registry: "ResourceTypeRegistry"


class ProbeState(enum.Enum):
    READY = "ready"
    NOT_READY = "not-ready"
    TRANSIENT = "transient"


class Probe(NamedTuple):
    """Result of a single readiness evaluation in the wait engine."""
    state: ProbeState
    message: str | None = None

    @property
    def ready(self) -> bool:
        return self.state == ProbeState.READY

    @classmethod
    def ok(cls) -> "Probe":
        return cls(ProbeState.READY)

    @classmethod
    def pending(cls, message: str | None = None) -> "Probe":
        return cls(ProbeState.NOT_READY, message)

    @classmethod
    def transient(cls, message: str) -> "Probe":
        return cls(ProbeState.TRANSIENT, message)


class ResourceCondition(NamedTuple):
    """Predicate over the live version of a resource (`None` if it is gone)."""
    name: str
    predicate: Callable[[Dict[str, Any] | None], bool]

    @classmethod
    def readiness(cls, handler) -> "ResourceCondition":
        return cls("readiness", handler.is_ready)

    @classmethod
    def deletion(cls, handler) -> "ResourceCondition":
        return cls("deletion", handler.is_deleted)


# -----------------------------------------------------------------------------
#                             Kubeframe Configuration
# -----------------------------------------------------------------------------
class ClusterConfig(BaseModel):
    """Credentials for one named cluster context.

    A `kubeconfig` takes precedence over `url` and `token`.

    """
    kubeconfig: Path | None = None
    kubecontext: str | None = None
    url: str | None = None
    token: str | None = None


class Config(BaseModel):
    """Settings for the resource manager and its wait engine."""
    # Path to Kubernetes credentials of the default context.
    kubeconfig: Path = Path("~/.kube/config")

    # Kubernetes context (use `None` to use the default).
    kubecontext: str | None = None

    # Additional named cluster contexts, eg {"prod": ClusterConfig(...)}.
    contexts: Dict[str, ClusterConfig] = {}

    # Poll intervals and timeouts of the convenience "with wait" wrappers.
    poll_interval: Annotated[float, Field(gt=0)] = POLL_INTERVAL_1_SEC
    poll_interval_delete: Annotated[float, Field(gt=0)] = POLL_INTERVAL_1_SEC
    timeout_readiness: Annotated[float, Field(ge=0)] = TIMEOUT_MEDIUM
    timeout_deletion: Annotated[float, Field(ge=0)] = TIMEOUT_MEDIUM

    # Whether the teardown sweep waits for deletions concurrently.
    async_delete: bool = True

    # Write every created manifest into this folder (disabled if `None`).
    store_yaml_path: Path | None = None

    # 0: ERROR, 1: WARNING, 2: INFO, 3: DEBUG.
    log_level: Annotated[int, Field(ge=0)] = 2

    @field_validator("contexts")
    @classmethod
    def validate_contexts(cls, contexts: Dict[str, ClusterConfig]):
        # Context names are case insensitive and stored in lower case.
        out = {}
        for name, ctx in contexts.items():
            if name.strip() == "":
                raise ValueError("Context names must be non-empty")
            out[name.strip().lower()] = ctx
        return out
