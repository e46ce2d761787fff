from __future__ import annotations

import os


class InsufficientCoresError(RuntimeError):
    pass


def usable_cores() -> int:
    # Same number `nproc` prints: honours CPU affinity where the OS exposes it.
    if hasattr(os, "sched_getaffinity"):
        try:
            return len(os.sched_getaffinity(0))
        except OSError:
            pass
    return int(os.cpu_count() or 1)


def compute_slot_count(total_cores: int, cores_per_run: int) -> int:
    if cores_per_run < 1:
        raise ValueError(f"cores_per_run must be >= 1 (got {cores_per_run})")
    slots = int(total_cores) // int(cores_per_run)
    if slots < 1:
        raise InsufficientCoresError(f"Not enough CPU cores. Require at least {cores_per_run} cores.")
    return slots
