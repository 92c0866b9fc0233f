# utils/logging.py
import logging
import os
import sys

ROOT_NAME = "crypto_tracker"
LEVEL_ENV = "CRYPTO_TRACKER_LOG_LEVEL"

_configured = False


def _configure_root() -> logging.Logger:
    global _configured
    root = logging.getLogger(ROOT_NAME)
    if _configured:
        return root
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    root.addHandler(handler)
    level = os.environ.get(LEVEL_ENV, "WARNING").upper()
    root.setLevel(getattr(logging, level, logging.WARNING))
    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """Child logger of the shared crypto_tracker logger, e.g. get_logger("cli")."""
    _configure_root()
    return logging.getLogger(f"{ROOT_NAME}.{name}")
