"""YAML loader and dumper for manifest files.

Use the CSafeLoader/CSafeDumper from LibYAML if the host has it and the pure
Python safe versions otherwise. The dumper writes multi-line strings with the
"|" notation, which keeps ConfigMaps and Secrets in the stored test files
readable.

"""
import logging
from pathlib import Path
from typing import List

import yaml

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")

try:
    from yaml import (  # type: ignore
        CSafeDumper as Dumper, CSafeLoader as Loader,
    )
    logit.debug("Using LibYAML C library")
except ImportError:
    from yaml import SafeDumper as Dumper, SafeLoader as Loader  # type: ignore
    logit.debug("Using Python YAML library")


def fold_yaml_strings(dumper, data):
    """Use the `|` notation for all strings that contain a new-line."""
    style = '|' if '\n' in data else None
    return dumper.represent_scalar('tag:yaml.org,2002:str', data, style=style)


Dumper.add_representer(str, fold_yaml_strings)


def load_all(text: str) -> List[dict]:
    """Return all non-empty documents in the YAML `text`."""
    return [_ for _ in yaml.load_all(text, Loader=Loader) if _]


def dump(manifest: dict) -> str:
    return yaml.dump(manifest, Dumper=Dumper, default_flow_style=False)


def write(path: Path, manifest: dict) -> None:
    """Write `manifest` to `path` and create the parent folders as necessary."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump(manifest))
