"""Run N parallel slots of the lunchtime simulator, restarting each forever.

Each slot is an independent loop:
  - launch the simulator binary with stdout/stderr captured to a per-run log
  - kill it if it outlives the per-run timeout (reported as exit 124)
  - append "Exit status: <rc>" to the log, report the outcome, start again

The number of slots is usable_cores // cores_per_run. A missing binary is
downloaded for the detected OS/arch before any slot starts.

Usage:
  python -m simrunner.slot_supervisor --log-dir ~/simulator-logs \
    --binary-path ./lunchtime-simulator --timeout-hours 5
"""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from simrunner import capacity, provision
from simrunner.runlog import (
    NOT_EXECUTABLE_EXIT_CODE,
    NOT_FOUND_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    RunOutcome,
    SupervisorLog,
    append_exit_status,
    classify_exit,
    format_hours,
    run_log_path,
    timestamp,
    write_slot_state,
)
from simrunner.settings import RunnerSettings, apply_overrides, load_settings


INTERRUPTED_EXIT_CODE = 130

# Seconds between SIGTERM and SIGKILL when a run is cut short.
KILL_GRACE_S = 10.0


def _signal_pid_tree(pid: int, sig: int) -> None:
    if pid <= 0:
        return
    if os.name == "nt":
        # /T = tree, /F = force
        subprocess.call(["taskkill", "/PID", str(int(pid)), "/T", "/F"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        return
    try:
        os.killpg(int(pid), sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            os.kill(int(pid), sig)
        except ProcessLookupError:
            pass


def _stop_child(child: subprocess.Popen, grace_s: float) -> int:
    """SIGTERM the child's process group, then SIGKILL it if it lingers."""

    _signal_pid_tree(child.pid, signal.SIGTERM)
    try:
        return int(child.wait(timeout=grace_s))
    except subprocess.TimeoutExpired:
        _signal_pid_tree(child.pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        return int(child.wait())


def _launch(binary: Path, out_f: Any) -> subprocess.Popen:
    popen_kwargs: Dict[str, Any] = {
        "stdout": out_f,
        "stderr": subprocess.STDOUT,
        "stdin": subprocess.DEVNULL,
    }
    # Own process group so a timeout can take down anything the simulator forks.
    if os.name == "nt":
        popen_kwargs["creationflags"] = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
    else:
        popen_kwargs["start_new_session"] = True
    return subprocess.Popen([os.path.abspath(str(binary))], **popen_kwargs)  # noqa: S603


def run_once(
    binary: Path,
    log_path: Path,
    *,
    timeout_s: float,
    poll_s: float,
    stop: threading.Event,
    grace_s: float = KILL_GRACE_S,
) -> Tuple[int, float, bool]:
    """Run the binary once with output appended to ``log_path``.

    Returns (exit_code, duration_s, stopped). A run that hits ``timeout_s``
    reports TIMEOUT_EXIT_CODE; ``stopped`` is True when ``stop`` cut it short.
    """

    start_mono = time.monotonic()
    deadline = start_mono + float(timeout_s)
    stopped = False

    with log_path.open("ab") as out_f:
        try:
            child = _launch(binary, out_f)
        except FileNotFoundError as e:
            out_f.write(f"failed to launch {binary}: {e}\n".encode("utf-8"))
            return NOT_FOUND_EXIT_CODE, time.monotonic() - start_mono, False
        except OSError as e:
            out_f.write(f"failed to launch {binary}: {e}\n".encode("utf-8"))
            return NOT_EXECUTABLE_EXIT_CODE, time.monotonic() - start_mono, False

        while True:
            rc = child.poll()
            if rc is not None:
                break
            if stop.is_set():
                stopped = True
                rc = _stop_child(child, grace_s)
                break
            now = time.monotonic()
            if now >= deadline:
                _stop_child(child, grace_s)
                rc = TIMEOUT_EXIT_CODE
                break
            stop.wait(min(poll_s, max(0.01, deadline - now)))

    rc = int(rc)
    if rc < 0:
        # Killed by signal N: report 128+N the way a shell would.
        rc = 128 - rc
    return rc, time.monotonic() - start_mono, stopped


def run_slot(
    slot_id: int,
    settings: RunnerSettings,
    *,
    emit: Callable[[str], None],
    stop: threading.Event,
    max_runs: int = 0,
) -> int:
    """Restart the simulator in this slot until ``stop`` is set.

    ``max_runs`` > 0 ends the loop after that many runs. Returns the number of
    runs started.
    """

    timeout_label = format_hours(settings.timeout_hours)
    attempt = 0
    while not stop.is_set():
        if max_runs > 0 and attempt >= max_runs:
            break
        attempt += 1
        log_path = run_log_path(settings.log_dir, slot_id)
        emit(f"Slot {slot_id} starting new run (log: {log_path})")
        _record_state(settings.log_dir, slot_id, emit, {"attempt": attempt, "running": True, "log": str(log_path)})

        try:
            rc, dur_s, stopped = run_once(
                settings.binary_path,
                log_path,
                timeout_s=settings.timeout_s,
                poll_s=settings.poll_interval_s,
                stop=stop,
            )
        except OSError as e:
            emit(f"Slot {slot_id}: run could not start ({e!r}); retrying in {settings.poll_interval_s:g}s")
            stop.wait(settings.poll_interval_s)
            continue
        try:
            append_exit_status(log_path, rc)
        except OSError as e:
            emit(f"Slot {slot_id}: exit status write failed: {e!r}")

        outcome = classify_exit(rc)
        _record_state(
            settings.log_dir,
            slot_id,
            emit,
            {
                "attempt": attempt,
                "running": False,
                "log": str(log_path),
                "exit_code": int(rc),
                "outcome": outcome.value,
                "duration_s": float(dur_s),
            },
        )

        if stopped:
            emit(f"Slot {slot_id}: run stopped (exit {rc}). See log: {log_path}")
            break
        if outcome is RunOutcome.SUCCEEDED:
            emit(f"Slot {slot_id}: Run succeeded in {dur_s:.0f}s.")
        elif outcome is RunOutcome.TIMED_OUT:
            emit(f"Slot {slot_id}: Run timed out after {timeout_label}.")
        else:
            emit(f"Slot {slot_id}: Run failed (exit {rc}). See log: {log_path}")

        if max_runs > 0 and attempt >= max_runs:
            break
        if rc in (NOT_FOUND_EXIT_CODE, NOT_EXECUTABLE_EXIT_CODE):
            # Launch failures return instantly; pace the restarts.
            stop.wait(settings.poll_interval_s)
        emit(f"Slot {slot_id} restarting next run...")
    return attempt


def _record_state(log_dir: Path, slot_id: int, emit: Callable[[str], None], payload: Dict[str, Any]) -> None:
    try:
        write_slot_state(log_dir, slot_id, payload)
    except OSError as e:
        emit(f"Slot {slot_id}: state write failed: {e!r}")


class _ArgParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        # Bad arguments exit 1 (argparse's default is 2).
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    p = _ArgParser(prog="simrunner", description="Run parallel, self-restarting simulator slots.")
    p.add_argument("--log-dir", default=None, help="Where run logs go. Default: ~/simulator-logs")
    p.add_argument("--binary-path", default=None, help="Simulator binary. Default: ./lunchtime-simulator")
    p.add_argument("--timeout-hours", type=float, default=None, help="Per-run time limit in hours. Default: 5")
    p.add_argument("--cores-per-run", type=int, default=None, help="CPU cores reserved per slot. Default: 8")
    p.add_argument(
        "--retry-interval-s",
        type=float,
        default=None,
        help="Wait between download attempts when the binary is missing. Default: 300",
    )
    p.add_argument("--download-url", default=None, help="Override the auto-detected release URL.")
    p.add_argument(
        "--poll-interval-s",
        type=float,
        default=None,
        help="How often a slot checks its child for exit/timeout (seconds). Default: 1",
    )
    p.add_argument(
        "--max-runs-per-slot",
        type=int,
        default=0,
        help="Stop each slot after this many runs. Default: 0 (run forever).",
    )
    return p.parse_args(list(argv) if argv is not None else None)


def _resolve_settings(args: argparse.Namespace) -> RunnerSettings:
    return apply_overrides(
        load_settings(),
        log_dir=Path(args.log_dir).expanduser() if args.log_dir else None,
        binary_path=Path(args.binary_path).expanduser() if args.binary_path else None,
        timeout_hours=args.timeout_hours,
        cores_per_run=args.cores_per_run,
        retry_interval_s=args.retry_interval_s,
        download_url=args.download_url,
        poll_interval_s=args.poll_interval_s,
    )


def _install_stop_handlers(stop: threading.Event) -> Dict[int, Any]:
    previous: Dict[int, Any] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous

    def _handler(signum: int, frame: Any) -> None:
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if args.max_runs_per_slot < 0:
        print(f"{timestamp()} --max-runs-per-slot must be >= 0", file=sys.stderr)
        return 1
    try:
        settings = _resolve_settings(args)
    except ValueError as e:
        print(f"{timestamp()} Invalid configuration: {e}", file=sys.stderr)
        return 1

    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"{timestamp()} Cannot create log dir {settings.log_dir}: {e}", file=sys.stderr)
        return 1
    emit = SupervisorLog(settings.log_dir / "supervisor.log")

    # Armed before provisioning so a signal during the download loop also
    # ends in a clean INTERRUPTED_EXIT_CODE.
    stop = threading.Event()
    previous = _install_stop_handlers(stop)
    try:
        rc = _supervise(settings, int(args.max_runs_per_slot), emit=emit, stop=stop)
    except KeyboardInterrupt:
        stop.set()
        rc = INTERRUPTED_EXIT_CODE
    finally:
        _restore_handlers(previous)

    if stop.is_set():
        emit("Stop requested; all slots stopped.")
        return INTERRUPTED_EXIT_CODE
    return rc


def _supervise(settings: RunnerSettings, max_runs: int, *, emit: SupervisorLog, stop: threading.Event) -> int:
    os_name, arch = provision.detect_platform()
    emit(f"Auto-detected system: {os_name}-{arch}")

    if not settings.binary_path.is_file():
        try:
            url = settings.download_url or provision.release_url_for(os_name, arch)
        except provision.UnsupportedPlatformError as e:
            emit(str(e))
            return 1
        emit(f"Will download simulator from: {url}")
        if not provision.provision_binary(
            settings.binary_path,
            url,
            retry_interval_s=settings.retry_interval_s,
            emit=emit,
            sleep=stop.wait,
            should_stop=stop.is_set,
        ):
            return INTERRUPTED_EXIT_CODE if stop.is_set() else 1

    total_cores = capacity.usable_cores()
    try:
        n_slots = capacity.compute_slot_count(total_cores, settings.cores_per_run)
    except capacity.InsufficientCoresError as e:
        emit(str(e))
        return 1

    emit(f"Detected {total_cores} cores. Running {n_slots} simulator slots.")
    emit(f"Logs: {settings.log_dir}")
    emit(f"Simulator binary: {settings.binary_path}")
    emit(f"Timeout per run: {format_hours(settings.timeout_hours)}")

    threads: List[threading.Thread] = []
    try:
        for slot_id in range(1, n_slots + 1):
            t = threading.Thread(
                target=run_slot,
                args=(slot_id, settings),
                kwargs={"emit": emit, "stop": stop, "max_runs": max_runs},
                name=f"slot-{slot_id}",
                daemon=True,
            )
            t.start()
            threads.append(t)

        while any(t.is_alive() for t in threads):
            for t in threads:
                t.join(timeout=settings.poll_interval_s)
    except KeyboardInterrupt:
        stop.set()
    finally:
        if stop.is_set():
            for t in threads:
                t.join()

    if stop.is_set():
        return INTERRUPTED_EXIT_CODE
    emit("All slots finished.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
