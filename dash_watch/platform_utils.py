"""
Cross-platform utilities for DASH Watcher.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.

Supported platforms:
  - Linux (primary target, runs under systemd)
  - macOS 12+
  - Windows 10/11 (best-effort; no process-group kill)
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
from typing import Any

logger = logging.getLogger(__name__)

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

# ---- child processes ---------------------------------------------------


def new_process_group_kwargs() -> dict[str, Any]:
    """
    Return ``subprocess.Popen`` keyword arguments that start the child in
    its own process group, so it can be killed together with anything it
    spawns and never receives the terminal's Ctrl-C directly.
    """
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]
    return {"start_new_session": True}


def kill_process_tree(proc: subprocess.Popen) -> None:
    """Forcibly terminate *proc* and its process group."""
    if proc.poll() is not None:
        return
    try:
        if IS_WINDOWS:
            proc.kill()
        else:
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass  # exited between poll() and kill
    except OSError:
        logger.warning("Could not kill process group %d; killing pid.", proc.pid, exc_info=True)
        proc.kill()
