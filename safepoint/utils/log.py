"""Logging setup for the safepoint CLI."""

from __future__ import annotations

import logging
import sys

from .env import is_debug_mode

LOG_FORMAT = "[safepoint] %(levelname)s %(name)s: %(message)s"


def configure_logging(debug: bool = False) -> None:
    """Install a stderr handler on the ``safepoint`` logger.

    Debug output is enabled by ``debug`` or ``SAFEPOINT_DEBUG``.
    """
    root = logging.getLogger("safepoint")
    root.setLevel(logging.DEBUG if debug or is_debug_mode() else logging.WARNING)

    # The previous stderr may be closed already; drop the handler unflushed.
    for old in [h for h in root.handlers if getattr(h, "_safepoint", False)]:
        root.removeHandler(old)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._safepoint = True  # type: ignore[attr-defined]
    root.addHandler(handler)
