"""Locate (or download) the simulator binary for the running OS/arch.

If the binary is missing it is fetched from the release server and retried on
a fixed interval until it arrives. Nothing is fetched when the binary already
exists.
"""

from __future__ import annotations

import os
import platform
import stat
import time
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests


RELEASE_BASE_URL = "https://releases.quilibrium.com"
ASSET_PREFIX = "lunchtime-simulator"

# (os, arch) -> release asset suffix
_ASSETS = {
    ("linux", "x86_64"): "linux-amd64",
    ("linux", "amd64"): "linux-amd64",
    ("linux", "aarch64"): "linux-arm64",
    ("linux", "arm64"): "linux-arm64",
    ("darwin", "arm64"): "darwin-arm64",
}

# curl reports 000 when no HTTP response was received.
NO_RESPONSE = 0

_CHUNK = 1 << 16


class UnsupportedPlatformError(RuntimeError):
    pass


def detect_platform() -> Tuple[str, str]:
    return platform.system().lower(), platform.machine().lower()


def release_url_for(os_name: str, arch: str, base_url: str = RELEASE_BASE_URL) -> str:
    key = (str(os_name).lower(), str(arch).lower())
    suffix = _ASSETS.get(key)
    if suffix is None:
        raise UnsupportedPlatformError(f"Unsupported OS/Arch: {key[0]}-{key[1]}")
    return f"{base_url.rstrip('/')}/{ASSET_PREFIX}-{suffix}"


def _make_executable(path: Path) -> None:
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def _fetch(session: requests.Session, url: str, dest: Path, timeout_s: float) -> int:
    """GET ``url`` into ``dest``; return the HTTP status (NO_RESPONSE on network error).

    The body lands in a sibling temp file first so a partial download never
    sits at ``dest``.
    """

    tmp = dest.with_name(dest.name + ".part")
    try:
        with session.get(url, stream=True, allow_redirects=True, timeout=timeout_s) as resp:
            if resp.status_code != 200:
                return int(resp.status_code)
            with tmp.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=_CHUNK):
                    if chunk:
                        f.write(chunk)
    except requests.RequestException:
        _discard(tmp)
        return NO_RESPONSE
    except OSError:
        _discard(tmp)
        raise
    try:
        os.replace(tmp, dest)
    except OSError:
        _discard(tmp)
        raise
    return 200


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def provision_binary(
    binary_path: Path,
    url: str,
    *,
    retry_interval_s: float,
    emit: Callable[[str], None],
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
    max_attempts: int = 0,
    request_timeout_s: float = 60.0,
    should_stop: Optional[Callable[[], bool]] = None,
) -> bool:
    """Download ``url`` to ``binary_path`` if it is missing.

    Returns True when the file is present afterwards. Retries every
    ``retry_interval_s`` until it succeeds; ``max_attempts`` > 0 bounds that,
    in which case False is returned once the attempts run out. False is also
    returned as soon as ``should_stop()`` turns true between attempts.

    Failing to write the file (full disk, read-only directory) counts as a
    failed attempt and is retried like an HTTP error.
    """

    binary_path = Path(binary_path)
    if binary_path.is_file():
        return True

    emit(f"Simulator binary not found at '{binary_path}'.")
    emit(f"Attempting to download from: {url}")

    own_session = session is None
    sess = requests.Session() if own_session else session
    attempt = 0
    try:
        while True:
            if should_stop is not None and should_stop():
                emit("Download cancelled.")
                return False
            attempt += 1
            try:
                binary_path.parent.mkdir(parents=True, exist_ok=True)
                status = _fetch(sess, url, binary_path, request_timeout_s)
                if status == 200:
                    _make_executable(binary_path)
                    emit(f"Downloaded and made executable: {binary_path}")
                    return True
                reason = f"HTTP {status:03d}"
            except OSError as e:
                reason = f"write error: {e}"
            if max_attempts > 0 and attempt >= max_attempts:
                emit(f"Download failed ({reason}). Giving up after {attempt} attempt(s).")
                return False
            emit(f"Download failed ({reason}). Retrying in {_describe_interval(retry_interval_s)}...")
            sleep(float(retry_interval_s))
    finally:
        if own_session:
            sess.close()


def _describe_interval(seconds: float) -> str:
    s = float(seconds)
    if s >= 60.0 and s % 60.0 == 0.0:
        return f"{int(s // 60)} minutes"
    return f"{s:g} seconds"
