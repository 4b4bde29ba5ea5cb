"""Load the Kubeframe configuration from YAML files and environment variables.

The environment variables `KUBECONFIG`, `KUBE_URL` and `KUBE_TOKEN` define
the default cluster context. The same variables with a suffix, eg
`KUBE_URL_PROD` and `KUBE_TOKEN_PROD`, define additional contexts (here
"prod").

"""
import logging
import os
import re
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Dict, Mapping, Tuple

import pydantic
import yaml

from kubeframe.dtypes import DEFAULT_CONTEXT_NAME, Config

# Convenience.
logit = logging.getLogger("kubeframe")

# Map the environment variables to `ClusterConfig` fields.
CLUSTER_VARS = {"KUBECONFIG": "kubeconfig", "KUBE_URL": "url", "KUBE_TOKEN": "token"}
RE_CLUSTER_VAR = re.compile(r"^(KUBECONFIG|KUBE_URL|KUBE_TOKEN)_(\w+)$")


def load(fname: Path) -> Tuple[Config, bool]:
    """Parse the Kubeframe configuration file `fname` and return it as a `Config`."""
    err_resp = Config(), True
    fname = Path(fname)

    # Load the configuration file.
    try:
        raw = yaml.safe_load(fname.read_text())
    except FileNotFoundError as e:
        logit.error(f"Cannot load config file <{fname}>: {e.args[1]}")
        return err_resp
    except yaml.YAMLError as exc:
        # Special case: parser supplied location information.
        mark = getattr(exc, "problem_mark", SimpleNamespace(line=-1, column=-1))
        line, col = (mark.line + 1, mark.column + 1)
        logit.error(f"YAML format error in {fname}: Line {line} Column {col}")
        return err_resp

    # Parse the configuration into `Config` structure.
    try:
        cfg = Config.model_validate(raw or {})
    except (pydantic.ValidationError, TypeError) as e:
        logit.error(f"Schema is invalid: {e}")
        return err_resp

    # Relative paths are relative to the configuration file.
    if cfg.store_yaml_path is not None and not cfg.store_yaml_path.is_absolute():
        cfg.store_yaml_path = fname.parent.absolute() / cfg.store_yaml_path

    return cfg, False


def parse_bool(value: str) -> bool:
    value = value.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Cannot interpret <{value}> as boolean")


def load_env(cfg: Config, env: Mapping[str, str]) -> Tuple[Config, bool]:
    """Return a copy of `cfg` with the settings from the environment `env`."""
    raw: Dict[str, Any] = cfg.model_dump()
    contexts: Dict[str, Dict[str, Any]] = raw["contexts"]

    # Default context.
    if env.get("KUBECONFIG"):
        raw["kubeconfig"] = env["KUBECONFIG"]
    if env.get("KUBE_URL") or env.get("KUBE_TOKEN"):
        ctx = contexts.setdefault(DEFAULT_CONTEXT_NAME, {})
        ctx["url"] = env.get("KUBE_URL")
        ctx["token"] = env.get("KUBE_TOKEN")
        if env.get("KUBECONFIG"):
            ctx["kubeconfig"] = env["KUBECONFIG"]

    # Additional contexts, eg `KUBE_URL_PROD`.
    for key, value in env.items():
        match = RE_CLUSTER_VAR.match(key)
        if match is None or not value:
            continue
        var, name = match.groups()
        ctx = contexts.setdefault(name.lower(), {})
        ctx[CLUSTER_VARS[var]] = value

    try:
        if "KUBEFRAME_ASYNC_DELETE" in env:
            raw["async_delete"] = parse_bool(env["KUBEFRAME_ASYNC_DELETE"])
        if env.get("KUBEFRAME_STORE_YAML_PATH"):
            raw["store_yaml_path"] = env["KUBEFRAME_STORE_YAML_PATH"]
        out = Config.model_validate(raw)
    except (pydantic.ValidationError, ValueError) as e:
        logit.error(f"Invalid environment configuration: {e}")
        return cfg, True

    for name in sorted(set(out.contexts) - set(cfg.contexts)):
        logit.debug(f"Found cluster context <{name}> in environment")
    return out, False


def load_config(env: Mapping[str, str] | None = None) -> Tuple[Config, bool]:
    """Return the configuration from the `ENV_FILE` and the environment.

    The `ENV_FILE` defaults to "config.yaml" in the current folder. It is
    fine if it does not exist.

    """
    env = os.environ if env is None else env

    fname = Path(env.get("ENV_FILE", "config.yaml"))
    if fname.exists():
        cfg, err = load(fname)
        if err:
            return cfg, True
    else:
        logit.debug(f"No config file <{fname}> - using defaults")
        cfg = Config()

    return load_env(cfg, env)
