"""Optional timestamped debug trace output shared by the whole package."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Optional, TextIO

_lock = threading.Lock()
_writer: Optional[TextIO] = None


def set_debug_out(writer: Optional[TextIO]) -> None:
    """Send debug messages to ``writer``; ``None`` turns debug output off."""
    global _writer
    with _lock:
        _writer = writer


def debugf(fmt: str, *args: object) -> None:
    """Write one timestamped debug line if debug output is enabled.

    ``fmt`` is a %-style format string applied to ``args``. A newline is
    appended unless ``fmt`` is empty or already ends with one.
    """
    writer = _writer
    if writer is None:
        return
    text = fmt % args if args else fmt
    stamp = datetime.now().strftime("%y-%m-%d %H:%M:%S.%f")
    line = f"[{stamp}]{text}"
    if fmt and not fmt.endswith("\n"):
        line += "\n"
    with _lock:
        try:
            writer.write(line)
        except (OSError, ValueError):
            # Debug output must never break the protocol logic.
            pass