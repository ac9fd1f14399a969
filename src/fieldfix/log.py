# log.py
# Logging setup. Every module asks for its logger here; output goes through
# a single rich handler attached to the package root logger.

import logging

from rich.logging import RichHandler

_ROOT = "fieldfix"


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach the rich handler once and set the package log level."""
    root = logging.getLogger(_ROOT)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(isinstance(h, RichHandler) for h in root.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False, markup=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="[%X]"))
        root.addHandler(handler)
        root.propagate = False

    return root


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace (pass __name__)."""
    if name != _ROOT and not name.startswith(_ROOT + "."):
        name = f"{_ROOT}.{name}"
    return logging.getLogger(name)
