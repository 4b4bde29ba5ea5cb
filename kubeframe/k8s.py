"""Talk to the Kubernetes REST API.

`connect` turns credentials (see `kubeframe.credentials`) into a ready to use
`K8sConfig`: it attaches an HttpX client, asks K8s for its version and
discovers the endpoints of all resource kinds. `call` then makes the actual
requests and raises the `ClusterError` family on failure.

"""
import logging
import re
import ssl
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Set, Tuple
from urllib.parse import urlparse

import httpx
import tenacity as tc

from kubeframe import credentials
from kubeframe.dtypes import K8sConfig, K8sResource, MetaManifest
from kubeframe.errors import ClusterError, KubeconfigError, classify

# Define the exceptions we want to retry on.
WEB_EXCEPTIONS = (httpx.RequestError, ssl.SSLError, TimeoutError)

# Kubeframe can only manage resources that support all these verbs.
MINIMAL_VERBS = {"create", "delete", "get", "update"}

# Valid namespace names (RFC 1123 labels).
RE_NAMESPACE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")


def _on_backoff(retry_state: tc.RetryCallState):
    """Log a warning on each retry."""
    k8sconfig, method, url = retry_state.args[:3]
    logit.warning(
        f"Back off {retry_state.attempt_number} - {k8sconfig.name} - "
        f"{method} {urlparse(url).path}"
    )


def _mysleep(delay: float):
    """This trivial function exists to mock out the `sleep` call during tests."""
    # The random jitter may produce negative delays.
    time.sleep(max(delay, 0))


@tc.retry(
    stop=(tc.stop_after_delay(300) | tc.stop_after_attempt(8)),
    wait=tc.wait_exponential(multiplier=1, min=0, max=20) + tc.wait_random(-5, 5),
    retry=tc.retry_if_exception_type(WEB_EXCEPTIONS),
    before_sleep=_on_backoff,
    reraise=True,
    sleep=lambda delay: _mysleep(delay),
)
def _send(k8sconfig: K8sConfig,
          method: str,
          url: str,
          payload: dict | list | None,
          headers: dict | None) -> httpx.Response:
    return k8sconfig.client.request(method, url, json=payload, headers=headers)


def call(k8sconfig: K8sConfig,
         method: str,
         url: str,
         payload: dict | list | None = None,
         headers: dict | None = None,
         ok: Tuple[int, ...] = (200,)) -> dict:
    """Send `payload` to `url` and return the decoded JSON response.

    Connection problems are retried with an exponential backoff. The call
    succeeds iff K8s answers with one of the `ok` status codes. Otherwise it
    raises the most specific `ClusterError`, eg `NotFound` or `Conflict`. The
    error code is -1 if K8s never answered.

    Inputs:
        k8sconfig: K8sConfig
            Must contain an HttpX client with the correct K8s certificates.
        method: str
            HTTP method, eg "POST".
        url: str
            Eg `https://1.2.3.4/api/v1/namespaces`
        payload: dict
            Anything that can be JSON encoded, usually a K8s manifest.
        headers: dict
            Request headers. These augment the client headers (eg the
            access token) instead of replacing them.

    Returns:
        dict: the JSON response of K8s.

    """
    try:
        ret = _send(k8sconfig, method, url, payload, headers)
    except WEB_EXCEPTIONS as err:
        logit.error(f"Giving up - {k8sconfig.name} - {err} - {method} {url}")
        raise ClusterError(method, url, -1, {"message": str(err) or type(err).__name__})

    try:
        resp = ret.json()
    except ValueError:
        logit.error(
            f"Invalid JSON from {k8sconfig.name} for {method} {url}:\n"
            + "-" * 80 + f"\n{ret.text}\n" + "-" * 80
        )
        raise ClusterError(method, url, ret.status_code, {"message": "invalid JSON"})

    logit.debug(f"{method} {ret.status_code} {ret.url}\nPayload: {payload}\nResponse: {resp}")
    if ret.status_code not in ok:
        # Missing resources are routine for the wait engine. Log them quietly.
        level = logging.DEBUG if ret.status_code == 404 else logging.ERROR
        logit.log(level, f"{ret.status_code} - {method} - {url} - {resp}")
        raise classify(method, url, ret.status_code, resp)
    return resp


def make_meta(manifest: dict) -> MetaManifest:
    """Return the `MetaManifest` of `manifest`.

    Raise `KeyError` if `manifest` lacks its `kind` or `metadata.name`.

    """
    # Namespaces are not namespaced themselves.
    ns = None if manifest["kind"] == "Namespace" else manifest["metadata"].get("namespace")
    return MetaManifest(
        apiVersion=manifest.get("apiVersion", ""),
        kind=manifest["kind"],
        namespace=ns,
        name=manifest["metadata"]["name"],
    )


def resource_url(k8sconfig: K8sConfig, meta: MetaManifest) -> str:
    """Return the URL of the resource in `meta`.

    Return the URL of the collection if `meta.name` is empty, eg
      - Namespace foo:       https://1.2.3.4/api/v1/namespaces/foo
      - ConfigMaps in ns:    https://1.2.3.4/api/v1/namespaces/ns/configmaps
      - ClusterRole foo:     https://1.2.3.4/apis/rbac.authorization.k8s.io/v1/clusterroles/foo

    Raise `ValueError` if the cluster does not serve `meta.kind` in
    `meta.apiVersion` or the namespace is invalid. An empty `apiVersion`
    selects the default version of the kind.

    """
    try:
        res = k8sconfig.apis[(meta.kind, meta.apiVersion)]
    except KeyError:
        version = meta.apiVersion or "any version"
        raise ValueError(f"{k8sconfig.name} does not serve {meta.kind} ({version})")

    parts = [res.url]

    # The namespace of cluster wide resources, eg ClusterRole, is irrelevant.
    if res.namespaced and meta.namespace:
        if RE_NAMESPACE.match(meta.namespace) is None:
            raise ValueError(f"Invalid namespace name <{meta.namespace}>")
        parts += ["namespaces", meta.namespace]
    elif res.namespaced and meta.name:
        raise ValueError(f"{meta.kind} {meta.name} lacks a namespace")

    parts.append(res.name)
    if meta.name:
        parts.append(meta.name)
    return str.join("/", parts)


def create_httpx_client(k8sconfig: K8sConfig) -> K8sConfig:
    """Return a copy of `k8sconfig` with an HttpX client for its cluster."""
    # Clusters reached via URL + token often lack a CA bundle.
    if k8sconfig.cadata:
        try:
            verify: ssl.SSLContext | bool = ssl.create_default_context(
                cadata=k8sconfig.cadata
            )
        except ssl.SSLError:
            raise KubeconfigError(k8sconfig.name, "invalid certificate authority")
    else:
        verify = False

    try:
        transport = httpx.HTTPTransport(
            verify=verify,
            cert=k8sconfig.cert,      # type: ignore
            retries=0,
            http1=True,
            http2=False,
        )
    except ssl.SSLError:
        raise KubeconfigError(k8sconfig.name, "invalid client certificate")
    except OSError as err:
        raise KubeconfigError(k8sconfig.name, f"cannot load client certificate ({err})")

    client = httpx.Client(timeout=httpx.Timeout(20), transport=transport)

    # Add the bearer token if we have one.
    headers = {"authorization": f"Bearer {k8sconfig.token}"} if k8sconfig.token else {}
    client.headers.update(headers)
    return k8sconfig._replace(client=client, headers=headers)


def version(k8sconfig: K8sConfig) -> str:
    """Return the version of the cluster, eg "1.29"."""
    url = f"{k8sconfig.url}/version"
    resp = call(k8sconfig, "GET", url)
    try:
        return f"{resp['major']}.{resp['minor']}"
    except (KeyError, TypeError):
        raise ClusterError("GET", url, -1, {"message": f"no version in {resp}"})


def group_resources(k8sconfig: K8sConfig, api_version: str,
                    path: str) -> List[K8sResource]:
    """Return the resources that the API group version `path` serves.

    Skip sub-resources like "deployments/status" and everything that does not
    support the `MINIMAL_VERBS`.

    """
    resp = call(k8sconfig, "GET", f"{k8sconfig.url}/{path}")

    out: List[K8sResource] = []
    for res in resp.get("resources", []):
        if "/" in res["name"]:
            continue
        if not MINIMAL_VERBS.issubset(res.get("verbs", [])):
            logit.debug(f"Ignore <{res['name']}> in {api_version}: verbs {res.get('verbs')}")
            continue
        out.append(K8sResource(
            api_version, res["kind"], res["name"], res["namespaced"],
            f"{k8sconfig.url}/{path}",
        ))
    return out


def default_endpoint(candidates: List[K8sResource], preferred: Set[str]) -> K8sResource:
    """Return the endpoint to use for manifests without an `apiVersion`.

    Prefer the preferred version of the API group, then stable versions over
    alpha and beta ones and finally the highest version.

    """
    def rank(res: K8sResource):
        unstable = "alpha" in res.apiVersion or "beta" in res.apiVersion
        return (res.apiVersion in preferred, not unstable, res.apiVersion)
    return max(candidates, key=rank)


def discover_endpoints(k8sconfig: K8sConfig) -> None:
    """Fill `k8sconfig.apis` and `k8sconfig.kinds` with what the cluster serves.

    The keys of `apis` are `(kind, apiVersion)` tuples, for instance
    ('ConfigMap', 'v1') or ('Deployment', 'apps/v1'). Every kind also has an
    entry with an empty `apiVersion` for its default endpoint.

    The update happens in place because the resource handlers of a cluster
    share its `K8sConfig`. Nothing changes if a request fails.

    """
    # The core group ("v1") lives under "api/v1", all others under "apis/...".
    versions: List[Tuple[str, str]] = [("v1", "api/v1")]
    preferred = {"v1"}
    for group in call(k8sconfig, "GET", f"{k8sconfig.url}/apis")["groups"]:
        preferred.add(group["preferredVersion"]["groupVersion"])
        versions += [(_["groupVersion"], f"apis/{_['groupVersion']}") for _ in group["versions"]]

    apis: Dict[Tuple[str, str], K8sResource] = {}
    by_kind: Dict[str, List[K8sResource]] = defaultdict(list)
    for api_version, path in versions:
        for res in group_resources(k8sconfig, api_version, path):
            apis[(res.kind, res.apiVersion)] = res
            by_kind[res.kind].append(res)

    for kind, candidates in by_kind.items():
        apis[(kind, "")] = default_endpoint(candidates, preferred)
        if len(candidates) > 1:
            options = sorted(_.apiVersion for _ in candidates)
            logit.debug(f"{kind} endpoints: {options} - using {apis[(kind, '')].apiVersion}")

    k8sconfig.apis.clear()
    k8sconfig.apis.update(apis)
    k8sconfig.kinds.clear()
    k8sconfig.kinds.update(by_kind)


def connect(k8sconfig: K8sConfig) -> K8sConfig:
    """Return a copy of `k8sconfig` that is ready to talk to its cluster.

    Attach an HttpX client, fetch the K8s version and discover the API
    endpoints.

    """
    # Every cluster needs its own endpoint tables.
    k8sconfig = k8sconfig._replace(apis={}, kinds=set())

    k8sconfig = create_httpx_client(k8sconfig)
    k8sconfig = k8sconfig._replace(version=version(k8sconfig))
    discover_endpoints(k8sconfig)

    logit.info(
        f"Connected to {k8sconfig.name} at {k8sconfig.url} "
        f"(version {k8sconfig.version}, {len(k8sconfig.kinds)} kinds)"
    )
    return k8sconfig


def cluster_config(kubeconfig: Path, context: str | None = None) -> K8sConfig:
    """Return the connected `K8sConfig` for `context` in `kubeconfig`."""
    return connect(credentials.load(kubeconfig, context))


def url_token_config(url: str, token: str, name: str = "") -> K8sConfig:
    """Return the connected `K8sConfig` for a cluster reachable via `url` and `token`."""
    return connect(K8sConfig(url=url.rstrip("/"), token=token, name=name or url))
