import logging

import colorama
from colorlog import ColoredFormatter

from kubeframe.dtypes import MetaManifest

# Convenience: global logger instance to avoid repetitive code.
logit = logging.getLogger("kubeframe")

# Colours for the operations in `format_resource`.
OP_COLORS = {
    "Creating": colorama.Fore.GREEN,
    "Updating": colorama.Fore.YELLOW,
    "Replacing": colorama.Fore.YELLOW,
    "Deleting": colorama.Fore.RED,
}


def setup_logging(log_level: int) -> None:
    """Configure logging at `log_level`.

    Level 0: ERROR
    Level 1: WARNING
    Level 2: INFO
    Level >=3: DEBUG

    Inputs:
        log_level: int

    Returns:
        None

    """
    levels = {0: "ERROR", 1: "WARNING", 2: "INFO"}
    level = levels.get(log_level, "DEBUG")

    logger = logging.getLogger("kubeframe")
    logger.setLevel(level)

    # Do not install a second handler if the user calls us repeatedly.
    for handler in logger.handlers:
        if getattr(handler, "_kubeframe", False):
            handler.setLevel(level)
            return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(
        ColoredFormatter(
            "%(log_color)s%(levelname)s%(reset)s - "
            "%(threadName)s - %(filename)s:%(lineno)d - %(message)s"
        )
    )
    setattr(handler, "_kubeframe", True)
    logger.addHandler(handler)


def log_separator(char: str = "#", length: int = 76) -> str:
    """Log and return a separator line."""
    line = char * length
    logit.info(line)
    return line


def format_resource(op: str, meta: MetaManifest, context: str = "",
                    color: bool = False) -> str:
    """Return eg "Creating ConfigMap foo in namespace bar (context default)"."""
    if color:
        op = f"{OP_COLORS.get(op, '')}{op}{colorama.Style.RESET_ALL}"

    out = f"{op} {meta.kind} {meta.name}"
    if meta.namespace:
        out += f" in namespace {meta.namespace}"
    if context:
        out += f" (context {context})"
    return out


def log_resource(op: str, meta: MetaManifest, context: str = "",
                 level: int = logging.INFO, color: bool = True) -> None:
    """Log the operation `op` on `meta` with a colour coded operation name."""
    logit.log(level, format_resource(op, meta, context, color))
