"""
regexlab/core/logger.py: JSONL event log for engine, translator and store events.

One JSON object per line in ``$REGEXLAB_LOG_DIR/regexlab_{date}.jsonl``
(default ``./logs``), a new file per UTC day. WARN and above are mirrored to
stderr through the ``regexlab.events`` stdlib logger.

    log = get_logger()
    log.perf("engine", "load_done", latency_ms=8240.5, data={"variant": "PRIMARY"})
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any, Optional

# ── stderr mirror for WARN+ ───────────────────────────────────
_stdlib = logging.getLogger("regexlab.events")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s: %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.WARNING)
_stdlib.propagate = False

_MIRRORED = {"WARN": logging.WARNING, "ERROR": logging.ERROR, "CRITICAL": logging.CRITICAL}

_instance: Optional["EventLogger"] = None
_instance_lock = threading.Lock()


class EventLogger:
    """
    Append-only JSONL log shared by the whole process.

    Entries carry ``timestamp_iso``, ``level``, ``phase`` (subsystem),
    ``event``, ``data`` and, for PERF entries, ``latency_ms``.

    Args:
        log_dir: Directory for the daily files; ``$REGEXLAB_LOG_DIR`` when ``None``.
    """

    def __init__(self, log_dir: Path | str | None = None) -> None:
        self._lock = threading.Lock()
        self._log_dir = Path(log_dir or os.environ.get("REGEXLAB_LOG_DIR", "logs"))
        self._file: Optional[IO[str]] = None
        self._day = ""

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("WARN", phase, event, data)

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("ERROR", phase, event, data)

    def critical(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        self._write("CRITICAL", phase, event, data)

    def perf(self, phase: str, event: str, latency_ms: float, data: Optional[dict] = None) -> None:
        """Record how long *event* took."""
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        with self._lock:
            if self._file is not None and not self._file.closed:
                self._file.flush()

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            day = now.strftime("%Y-%m-%d")
            if day != self._day or self._file is None:
                if self._file is not None:
                    self._file.close()
                self._log_dir.mkdir(parents=True, exist_ok=True)
                self._file = open(self._log_dir / f"regexlab_{day}.jsonl", "a", encoding="utf-8", buffering=1)
                self._day = day
            self._file.write(line + "\n")

        if level in _MIRRORED:
            _stdlib.log(_MIRRORED[level], "[%s] %s | %s", phase, event, data or {})


def get_logger() -> EventLogger:
    """Return the process-wide :class:`EventLogger`, creating it on first use."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = EventLogger()
    return _instance
