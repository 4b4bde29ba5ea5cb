"""Find the credentials to access a Kubernetes cluster.

A kubeconfig context names a cluster and a user. The user section can
authenticate with a credential plugin (eg `aws-iam-authenticator`), with
client certificates (embedded like KinD does it or as files like Minikube
does it) or with a plain bearer token. `load` tries the `LOADERS` in that
order and returns the first `K8sConfig` that fits.

Inside a pod without a kubeconfig file, `load` falls back to the service
account of the pod.

"""
import base64
import binascii
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Tuple

import yaml

from kubeframe.dtypes import K8sConfig
from kubeframe.errors import KubeconfigError

# Convenience: location of K8s credentials inside a Pod.
TOKENFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
CAFILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt")

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")


class KubeContext(NamedTuple):
    """The cluster and user sections a kubeconfig context refers to."""
    source: Path
    context: str
    cluster_name: str
    cluster: dict
    user: dict


def read_context(path: Path, context: str | None = None) -> KubeContext:
    """Return the `KubeContext` called `context` in the kubeconfig `path`.

    Use the "current-context" of the file if `context` is `None`.

    """
    path = Path(path).expanduser()
    try:
        kubeconf = yaml.safe_load(path.read_text())
    except OSError as err:
        raise KubeconfigError(path, f"cannot read file ({err.strerror})")
    except yaml.YAMLError:
        raise KubeconfigError(path, "not a YAML file")

    if not isinstance(kubeconf, dict):
        raise KubeconfigError(path, "not a kubeconfig file")

    name = context or kubeconf.get("current-context")
    if not name:
        raise KubeconfigError(path, "no context given and no current-context")

    def lookup(section: str, key: str) -> dict:
        found = [_ for _ in kubeconf.get(section) or [] if _.get("name") == key]
        if len(found) != 1:
            raise KubeconfigError(path, f"cannot find <{key}> in {section}")
        return found[0]

    try:
        ctx = lookup("contexts", name)["context"]
        cluster = lookup("clusters", ctx["cluster"])
        user = lookup("users", ctx["user"])
        return KubeContext(
            source=path,
            context=name,
            cluster_name=cluster["name"],
            cluster=dict(cluster["cluster"]),
            user=dict(user.get("user") or {}),
        )
    except (AttributeError, KeyError, TypeError):
        raise KubeconfigError(path, f"context <{name}> is malformed")


def _decode(kctx: KubeContext, data: str) -> str:
    try:
        return base64.b64decode(data, validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        raise KubeconfigError(kctx.source, f"corrupt base64 data in <{kctx.context}>")


def certificate_authority(kctx: KubeContext) -> str | None:
    """Return the CA bundle of the cluster or `None` if it has none."""
    cluster = kctx.cluster
    if "certificate-authority-data" in cluster:
        return _decode(kctx, cluster["certificate-authority-data"])
    if "certificate-authority" in cluster:
        try:
            return Path(cluster["certificate-authority"]).expanduser().read_text()
        except OSError as err:
            raise KubeconfigError(cluster["certificate-authority"], err.strerror)
    return None


def _config(kctx: KubeContext, token: str = "",
            cert: Tuple[Path, Path] | None = None) -> K8sConfig:
    """Return the `K8sConfig` for the cluster of `kctx` with the given credentials."""
    server = kctx.cluster.get("server")
    if not server:
        raise KubeconfigError(kctx.source, f"cluster <{kctx.cluster_name}> has no server")

    return K8sConfig(
        url=server.rstrip("/"),
        name=kctx.cluster_name,
        token=token,
        cadata=certificate_authority(kctx),
        cert=cert,
    )


def run_credential_plugin(cmd: List[str], env: Dict[str, str]) -> str:
    """Run the credential plugin `cmd` with the extra `env` and return its stdout."""
    try:
        out = subprocess.run(cmd, env=dict(os.environ) | env, capture_output=True)
    except FileNotFoundError:
        raise KubeconfigError(cmd[0], "credential plugin not found")

    if out.returncode != 0:
        stderr = out.stderr.decode("utf8", errors="replace").strip()
        raise KubeconfigError(cmd[0], f"credential plugin failed: {stderr}")

    try:
        return out.stdout.decode("utf8")
    except UnicodeDecodeError:
        raise KubeconfigError(cmd[0], "credential plugin produced binary output")


def exec_plugin_config(kctx: KubeContext) -> K8sConfig | None:
    """Fetch a bearer token from the credential plugin in the user section.

    The plugin must print an `ExecCredential` manifest (JSON or YAML) with
    the token in `status.token`.

    """
    plugin = kctx.user.get("exec")
    if not plugin:
        return None

    try:
        cmd = [plugin["command"]] + list(plugin.get("args") or [])
        env = {_["name"]: _["value"] for _ in plugin.get("env") or []}
    except (KeyError, TypeError):
        raise KubeconfigError(kctx.source, f"invalid exec section in <{kctx.context}>")
    logit.debug(f"Credential plugin: {cmd} with envs: {env}")

    stdout = run_credential_plugin(cmd, env)
    try:
        token = yaml.safe_load(stdout)["status"]["token"]
    except (KeyError, TypeError, yaml.YAMLError):
        raise KubeconfigError(cmd[0], "credential plugin did not return a token")
    return _config(kctx, token=token)


def client_cert_config(kctx: KubeContext) -> K8sConfig | None:
    """Authenticate with the client certificate and key of the user section.

    KinD embeds them in the kubeconfig, whereas Minikube references files. The
    embedded ones end up in a temporary folder because HttpX only accepts
    files.

    """
    user = kctx.user
    if "client-certificate-data" in user and "client-key-data" in user:
        folder = Path(tempfile.mkdtemp(prefix="kubeframe-"))
        crt, key = folder / "client.crt", folder / "client.key"
        crt.write_text(_decode(kctx, user["client-certificate-data"]))
        key.write_text(_decode(kctx, user["client-key-data"]))
    elif "client-certificate" in user and "client-key" in user:
        crt = Path(user["client-certificate"]).expanduser()
        key = Path(user["client-key"]).expanduser()
    else:
        return None
    return _config(kctx, cert=(crt, key))


def token_config(kctx: KubeContext) -> K8sConfig | None:
    token = kctx.user.get("token")
    return _config(kctx, token=token) if token else None


def service_account_config(tokenfile: Path = TOKENFILE,
                           cafile: Path = CAFILE) -> K8sConfig | None:
    """Return the credentials of the pod we run in or `None` outside a pod."""
    host = os.getenv("KUBERNETES_SERVICE_HOST")
    tokenfile, cafile = Path(tokenfile), Path(cafile)
    if not host or not tokenfile.exists() or not cafile.exists():
        return None

    logit.info("Using the service account credentials of this pod")
    return K8sConfig(
        url=f"https://{host}",
        name="incluster",
        token=tokenfile.read_text().strip(),
        cadata=cafile.read_text(),
    )


# Authentication schemes of a kubeconfig user, in order of precedence.
LOADERS: Tuple[Callable[[KubeContext], K8sConfig | None], ...] = (
    exec_plugin_config,
    client_cert_config,
    token_config,
)


def load(path: Path, context: str | None = None) -> K8sConfig:
    """Return the credentials for `context` in the kubeconfig file `path`.

    The returned `K8sConfig` has neither a client nor API endpoints yet (see
    `k8s.connect`).

    """
    path = Path(path).expanduser()
    if not path.exists():
        incluster = service_account_config()
        if incluster is not None:
            return incluster

    kctx = read_context(path, context)
    for loader in LOADERS:
        k8sconfig = loader(kctx)
        if k8sconfig is not None:
            logit.info(f"Loaded context <{kctx.context}> from <{path}> ({loader.__name__})")
            return k8sconfig

    raise KubeconfigError(path, f"context <{kctx.context}> has no supported credentials")
