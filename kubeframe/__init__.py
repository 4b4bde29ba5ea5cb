import importlib.resources

from . import manager
from .cfgfile import load, load_config
from .logs import setup_logging

__version__ = '0.3.0'

# ---------------------------------------------------------------------------
# Global Runtime Constants
# ---------------------------------------------------------------------------
_DATA = importlib.resources.files("kubeframe") / "data" / "defaultconfig.yaml"
with importlib.resources.as_file(_DATA) as f:
    DEFAULT_CONFIG_FILE = f

# Kubeframe sources all its default values from this configuration file.
DEFAULT_CONFIG, err = load(DEFAULT_CONFIG_FILE)
assert not err

# ---------------------------------------------------------------------------
# Expose the primary API of Kubeframe for convenience.
# ---------------------------------------------------------------------------
KubeResourceManager = manager.KubeResourceManager

__all__ = [
    "DEFAULT_CONFIG", "KubeResourceManager", "load", "load_config", "setup_logging",
]
