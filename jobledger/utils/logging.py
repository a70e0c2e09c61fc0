"""Rate-limited warnings for failures that repeat on every sync cycle."""

from __future__ import annotations

import logging
import time

_LAST: dict[str, float] = {}
_SUPPRESSED: dict[str, int] = {}
_MAX_CODES = 1024


def warn_once(logger: logging.Logger, code: str, message: str, window: float = 60) -> bool:
    """Warn about ``code`` at most once per ``window`` seconds.

    Repeats inside the window are counted and reported with the next warning
    that gets through. The cache is capped; the stalest code is dropped first.
    Returns whether a warning was emitted.
    """
    now = time.monotonic()
    last = _LAST.get(code)
    if last is not None and now - last <= window:
        _SUPPRESSED[code] = _SUPPRESSED.get(code, 0) + 1
        return False
    if code not in _LAST and len(_LAST) >= _MAX_CODES:
        oldest = min(_LAST, key=_LAST.get)
        _LAST.pop(oldest, None)
        _SUPPRESSED.pop(oldest, None)
    _LAST[code] = now
    repeats = _SUPPRESSED.pop(code, 0)
    if repeats:
        logger.warning("%s: %s (%d similar suppressed)", code, message, repeats)
    else:
        logger.warning("%s: %s", code, message)
    return True


def reset_warnings() -> None:
    """Forget every rate-limited code, e.g. once sync has recovered."""
    _LAST.clear()
    _SUPPRESSED.clear()
