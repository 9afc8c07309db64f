"""Runtime-configurable debug logging utilities."""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator

_logger = logging.getLogger("kubenav")
_state_lock = threading.Lock()
_enabled = False

_REDACTED = "<redacted>"
_SECRET_KEYS = {"authorization", "token", "password", "passphrase", "pkcs12_passphrases"}


def configure_root(level: int = logging.WARNING) -> None:
    """Ensure standard logging configuration is present."""

    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


def is_enabled() -> bool:
    """Return whether verbose debug logging is active."""

    with _state_lock:
        return _enabled


def enable() -> None:
    """Enable verbose logging globally."""

    global _enabled
    with _state_lock:
        _enabled = True
    _logger.setLevel(logging.DEBUG)
    _logger.debug("Verbose debug mode enabled")


def disable() -> None:
    """Disable verbose logging globally."""

    global _enabled
    with _state_lock:
        _enabled = False
    _logger.setLevel(logging.INFO)
    _logger.debug("Verbose debug mode disabled")


@contextmanager
def temporary_enable() -> Iterator[None]:
    """Temporarily enable verbose logging within a block."""

    was_enabled = is_enabled()
    if not was_enabled:
        enable()
    try:
        yield
    finally:
        if not was_enabled:
            disable()


def redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of *payload* with credential-bearing values masked."""

    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        if key.lower() in _SECRET_KEYS:
            cleaned[key] = _REDACTED
        elif isinstance(value, dict):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


def _normalise(payload: Dict[str, Any]) -> str:
    try:
        return json.dumps(redact(payload), separators=(",", ":"), default=str)
    except TypeError:
        return str(payload)


def log_request(context: str, payload: Dict[str, Any]) -> None:
    """Emit structured debug log for outgoing requests."""

    if not is_enabled():
        return
    logging.getLogger("kubenav.request").debug(
        "%s request: %s", context, _normalise(payload)
    )


def log_response(context: str, payload: Dict[str, Any]) -> None:
    """Emit structured debug log for responses."""

    if not is_enabled():
        return
    logging.getLogger("kubenav.response").debug(
        "%s response: %s", context, _normalise(payload)
    )
