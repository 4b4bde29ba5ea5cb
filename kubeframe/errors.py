"""Exceptions raised by the lifecycle manager, its registry and the wait engine.

`kubeframe.credentials` raises `KubeconfigError` for unusable credentials and
`kubeframe.k8s` translates failed requests into the `ClusterError` family
below so that callers can tell an existing resource from a missing one.

"""
from typing import Any, List, Tuple


class KubeframeError(Exception):
    """Base class for all Kubeframe exceptions."""


class UnknownResourceKind(KubeframeError):
    def __init__(self, kind: str | None):
        self.kind = kind
        super().__init__(f"No resource type registered for kind <{kind}>")


class UnknownContext(KubeframeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Unknown context <{name}>. Define env vars "
            f"[KUBE_URL|KUBE_TOKEN|KUBECONFIG]_{name.upper()}"
        )


class KubeconfigError(KubeframeError):
    """The credentials in `source` (usually a kubeconfig file) are unusable."""
    def __init__(self, source, reason: str):
        self.source = str(source)
        self.reason = reason
        super().__init__(f"{source}: {reason}")


class ConvergenceTimeout(KubeframeError):
    def __init__(self, description: str, timeout: float):
        self.description = description
        self.timeout = timeout
        super().__init__(f"Timeout after {timeout}s waiting for {description}")


class ClusterError(KubeframeError):
    """A request to the Kubernetes API failed.

    The `code` is -1 if the request never produced an HTTP response.

    """
    def __init__(self, method: str, url: str, code: int, response: Any = None):
        self.method = method
        self.url = url
        self.code = code
        self.response = response

        # K8s returns a `Status` manifest with a human readable message.
        reason = response.get("message", "") if isinstance(response, dict) else ""
        super().__init__(f"{code} - {method} - {url} - {reason}".rstrip(" -"))


class AlreadyExists(ClusterError):
    pass


class Conflict(ClusterError):
    pass


class NotFound(ClusterError):
    pass


class InvalidResource(ClusterError):
    pass


class TeardownAggregateFailure(KubeframeError):
    """Collects every error of a cleanup sweep.

    `failures` is a list of `(description, exception)` tuples, one for each
    entry that could not be torn down.

    """
    def __init__(self, failures: List[Tuple[str, BaseException]]):
        self.failures = list(failures)
        lines = [f"  {desc}: {err!r}" for desc, err in self.failures]
        msg = f"Failed to tear down {len(self.failures)} resource(s):\n"
        super().__init__(msg + str.join("\n", lines))


def classify(method: str, url: str, code: int, response: Any) -> ClusterError:
    """Return the most specific `ClusterError` for a failed request."""
    if code == 404:
        return NotFound(method, url, code, response)
    if code == 409:
        # K8s uses 409 for name clashes on POST and for stale `resourceVersion`
        # values on PUT.
        if method == "POST":
            return AlreadyExists(method, url, code, response)
        return Conflict(method, url, code, response)
    if code in (400, 422):
        return InvalidResource(method, url, code, response)
    return ClusterError(method, url, code, response)
