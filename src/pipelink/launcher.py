"""Local engine process management.

Starts the webservice binary in the background and waits for it to answer
liveness checks, or forwards a whole command line to the desktop app.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from pipelink.config import DEFAULT_APP_NAME

if TYPE_CHECKING:
    from pipelink.api import EngineAPI
    from pipelink.models import Alive

logger = logging.getLogger(__name__)

# Executable names of the desktop app that hosts its own engine
GUI_HOST_NAMES = (DEFAULT_APP_NAME, f"{DEFAULT_APP_NAME}.exe")


def is_gui_host(path: Path | str) -> bool:
    """True if path names the desktop app rather than a bare engine."""
    return str(path).endswith(GUI_HOST_NAMES)


def app_path_windows() -> Path:
    return (
        Path(os.environ.get("LOCALAPPDATA", ""))
        / "Programs"
        / "pipeline-ui"
        / f"{DEFAULT_APP_NAME}.exe"
    )


def find_app() -> Path | None:
    """Locate the desktop app.

    Installers register it on the user PATH (a link in /usr/local/bin on
    macOS); on Windows it lives under %LOCALAPPDATA%.
    """
    if sys.platform.startswith("win"):
        candidate = app_path_windows()
        return candidate if candidate.exists() else None
    found = shutil.which(DEFAULT_APP_NAME)
    return Path(found) if found else None


class ProcessLauncher:
    """Launches engine processes and waits for them to come alive."""

    def launch(self, path: Path, args: Sequence[str] = ()) -> subprocess.Popen:
        """Start the engine detached from this process.

        Raises:
            OSError: If the binary cannot be started
        """
        logger.info(f"Launching engine: {path}")
        kwargs: dict = {}
        if sys.platform.startswith("win"):
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return subprocess.Popen(
            [str(path), *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **kwargs,
        )

    async def wait_liveness(
        self,
        api: "EngineAPI",
        attempts: int,
        interval: float,
        cancel: asyncio.Event | None = None,
    ) -> "Alive | None":
        """Poll liveness until it answers or attempts run out.

        Returns:
            The liveness response, or None on exhaustion or cancellation
        """
        for attempt in range(1, attempts + 1):
            if cancel is not None and cancel.is_set():
                logger.info("Liveness wait cancelled")
                return None
            try:
                return await api.alive()
            except Exception as e:
                logger.debug(f"Liveness attempt {attempt}/{attempts} failed: {e}")

            if attempt == attempts:
                break
            if await _sleep(interval, cancel):
                logger.info("Liveness wait cancelled")
                return None
        return None

    async def forward(self, path: Path, argv: Sequence[str]) -> int:
        """Run the desktop app with the given arguments.

        stdout/stderr are inherited. Without arguments "help" is passed.

        Returns:
            The app's exit code

        Raises:
            OSError: If the app cannot be started
        """
        args = list(argv) or ["help"]
        resolved = shutil.which(str(path)) or str(path)
        logger.info(f"Forwarding to desktop app: {resolved} {' '.join(args)}")

        loop = asyncio.get_running_loop()
        completed = await loop.run_in_executor(
            None, lambda: subprocess.run([resolved, *args])
        )
        return completed.returncode


async def _sleep(seconds: float, cancel: asyncio.Event | None) -> bool:
    """Sleep, waking early if cancel is set. Returns True when cancelled."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False
