"""
Central logging setup.

A single idempotent setup keeps handlers from piling up when the app factory
runs several times (tests create one app per test).
"""
from __future__ import annotations

import logging

_INITIALIZED = False

DEFAULT_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'


def setup_logging(level: str = 'INFO', debug: bool = False, force: bool = False) -> None:
    global _INITIALIZED
    if _INITIALIZED and not force:
        return

    root = logging.getLogger()
    if force:
        for h in list(root.handlers):
            root.removeHandler(h)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, (level or 'INFO').upper(), logging.INFO))

    # Request/response tracing of the Talk client lives at DEBUG
    if debug:
        logging.getLogger('talklink').setLevel(logging.DEBUG)
    _INITIALIZED = True


__all__ = ["setup_logging"]
