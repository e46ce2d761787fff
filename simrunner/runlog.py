"""Run log naming, outcome classification and append-only supervisor logging."""

from __future__ import annotations

import enum
import json
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


# Exit codes used by GNU timeout / POSIX shells; reused so logs read the same.
TIMEOUT_EXIT_CODE = 124
NOT_EXECUTABLE_EXIT_CODE = 126
NOT_FOUND_EXIT_CODE = 127


def _utc_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _now_ts() -> str:
    return time.strftime("%Y%m%d_%H%M%S")


def timestamp() -> str:
    return time.strftime("[%Y-%m-%d %H:%M:%S]")


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def _append_line(path: Path, line: str) -> None:
    _ensure_dir(path.parent)
    with path.open("a", encoding="utf-8") as f:
        f.write(line.rstrip("\n") + "\n")


def _atomic_write_json(path: Path, payload: Dict[str, Any]) -> None:
    _ensure_dir(path.parent)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, sort_keys=True, indent=2), encoding="utf-8")
    tmp.replace(path)


class RunOutcome(enum.Enum):
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


def classify_exit(rc: int) -> RunOutcome:
    if rc == 0:
        return RunOutcome.SUCCEEDED
    if rc == TIMEOUT_EXIT_CODE:
        return RunOutcome.TIMED_OUT
    return RunOutcome.FAILED


def run_log_path(log_dir: Path, slot_id: int, ts: Optional[str] = None) -> Path:
    # simulator_<YYYYmmdd_HHMMSS>_run<slot>.log
    return Path(log_dir) / f"simulator_{ts or _now_ts()}_run{int(slot_id)}.log"


def append_exit_status(log_path: Path, rc: int) -> None:
    _append_line(log_path, f"Exit status: {int(rc)}")


def format_hours(hours: float) -> str:
    # Mirrors the `timeout` duration suffix: 5 -> "5h", 0.5 -> "0.5h".
    h = float(hours)
    return f"{int(h)}h" if h.is_integer() else f"{h:g}h"


def write_slot_state(log_dir: Path, slot_id: int, payload: Dict[str, Any]) -> Path:
    state_path = Path(log_dir) / f"slot{int(slot_id)}_state.json"
    body = {"version": 1, "updated_utc": _utc_iso(), "slot": int(slot_id)}
    body.update(payload)
    _atomic_write_json(state_path, body)
    return state_path


class SupervisorLog:
    """Timestamped lines to a stream plus an append-only supervisor.log.

    Slots share one instance, so writes are serialized to keep lines whole.
    """

    def __init__(self, path: Optional[Path], stream: Optional[TextIO] = None) -> None:
        self.path = Path(path) if path is not None else None
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def __call__(self, msg: str) -> None:
        line = f"{timestamp()} {msg}"
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()
            if self.path is not None:
                try:
                    _append_line(self.path, line)
                except OSError as e:
                    self.stream.write(f"{timestamp()} supervisor.log write failed: {e!r}\n")
                    self.stream.flush()
