"""Runner defaults plus SIMRUNNER_* environment overrides.

CLI flags are applied on top of these by slot_supervisor; the precedence is
CLI > environment > defaults.
"""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple


ENV_PREFIX = "SIMRUNNER_"


@dataclass(frozen=True)
class RunnerSettings:
    log_dir: Path = Path("~/simulator-logs").expanduser()
    binary_path: Path = Path("./lunchtime-simulator")
    timeout_hours: float = 5.0
    cores_per_run: int = 8
    retry_interval_s: float = 300.0
    poll_interval_s: float = 1.0
    download_url: str = ""

    @property
    def timeout_s(self) -> float:
        return float(self.timeout_hours) * 3600.0

    def validate(self) -> "RunnerSettings":
        for name in ("timeout_hours", "retry_interval_s", "poll_interval_s"):
            val = getattr(self, name)
            if not math.isfinite(val):
                raise ValueError(f"{name} must be a finite number (got {val})")
        if self.timeout_hours <= 0:
            raise ValueError(f"timeout_hours must be > 0 (got {self.timeout_hours})")
        if self.cores_per_run < 1:
            raise ValueError(f"cores_per_run must be >= 1 (got {self.cores_per_run})")
        if self.retry_interval_s < 0:
            raise ValueError(f"retry_interval_s must be >= 0 (got {self.retry_interval_s})")
        if self.poll_interval_s <= 0:
            raise ValueError(f"poll_interval_s must be > 0 (got {self.poll_interval_s})")
        return self


def _as_path(raw: str) -> Path:
    return Path(raw).expanduser()


def _as_float(raw: str) -> float:
    return float(raw)


def _as_int(raw: str) -> int:
    return int(raw)


_ENV_FIELDS: Tuple[Tuple[str, str, Callable[[str], Any]], ...] = (
    ("LOG_DIR", "log_dir", _as_path),
    ("BINARY_PATH", "binary_path", _as_path),
    ("TIMEOUT_HOURS", "timeout_hours", _as_float),
    ("CORES_PER_RUN", "cores_per_run", _as_int),
    ("RETRY_INTERVAL_S", "retry_interval_s", _as_float),
    ("POLL_INTERVAL_S", "poll_interval_s", _as_float),
    ("DOWNLOAD_URL", "download_url", str),
)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> RunnerSettings:
    """Return defaults overlaid with any SIMRUNNER_* variables found in ``environ``.

    Raises ValueError naming the offending variable when a value does not parse
    or is out of range.
    """

    env = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for suffix, field, conv in _ENV_FIELDS:
        key = ENV_PREFIX + suffix
        raw = env.get(key)
        if raw is None or not str(raw).strip():
            continue
        try:
            overrides[field] = conv(str(raw).strip())
        except ValueError as e:
            raise ValueError(f"{key}={raw!r}: {e}") from e
    return replace(RunnerSettings(), **overrides).validate()


def apply_overrides(base: RunnerSettings, **overrides: Any) -> RunnerSettings:
    """Overlay non-None keyword values (typically parsed CLI flags) on ``base``."""

    picked = {k: v for k, v in overrides.items() if v is not None}
    return replace(base, **picked).validate()
