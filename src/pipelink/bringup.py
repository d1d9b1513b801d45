"""Engine bring-up: connect, launch, forward or fail.

State machine:

    alive? ──yes──> Connected
      │no
      ├─ launch not allowed / endpoint pinned ──> Failed(EngineUnreachable)
      │
      resolve executable
      ├─ desktop app ──> forward argv ──> ForwardedToHost(exit code)
      └─ engine binary ──> launch, wait liveness
                             ├─ alive ──> LaunchedAndConnected
                             ├─ exhausted ──> Failed(LaunchTimeout)
                             └─ cancelled ──> Failed(LaunchCancelled)

Forwarding is an outcome, never an exit from inside this module; the
caller decides to end the process with the forwarded exit code.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Sequence, Union

from pipelink.errors import EngineUnreachable, LaunchCancelled, LaunchTimeout
from pipelink.launcher import ProcessLauncher, is_gui_host
from pipelink.models import (
    BringUpOutcome,
    Connected,
    Failed,
    ForwardedToHost,
    LaunchedAndConnected,
    Session,
)

if TYPE_CHECKING:
    from pipelink.api import EngineAPI

logger = logging.getLogger(__name__)

DEFAULT_LAUNCH_ATTEMPTS = 10
DEFAULT_LAUNCH_INTERVAL = 1.0

# Command line flags that pin the link to an explicit webservice
PINNING_FLAGS = ("--host", "--port")

ExecutablePath = Union[Path, Callable[[], Path]]


def endpoint_pinned(argv: Sequence[str]) -> bool:
    """True if the command line names an explicit host or port."""
    for arg in argv:
        name = arg.split("=", 1)[0]
        if name in PINNING_FLAGS:
            return True
    return False


async def bring_up(
    api: "EngineAPI",
    *,
    launch_allowed: bool,
    pinned_endpoint: bool,
    executable_path: ExecutablePath,
    argv: Sequence[str] = (),
    launcher: ProcessLauncher | None = None,
    attempts: int = DEFAULT_LAUNCH_ATTEMPTS,
    interval: float = DEFAULT_LAUNCH_INTERVAL,
    cancel: asyncio.Event | None = None,
) -> BringUpOutcome:
    """Make sure an engine is reachable.

    Args:
        api: Engine API pointing at the configured webservice
        launch_allowed: Whether a local engine may be started
        pinned_endpoint: The caller chose host/port explicitly
        executable_path: Path, or callable resolving it lazily
        argv: Original command line arguments, forwarded to the desktop app
        launcher: Process launcher (a default one when omitted)
        attempts: Liveness checks after a launch
        interval: Seconds between liveness checks
        cancel: Optional token interrupting the liveness wait

    Returns:
        One of Connected, LaunchedAndConnected, ForwardedToHost, Failed
    """
    try:
        alive = await api.alive()
    except Exception as e:
        alive_error = e
    else:
        logger.info(f"Connected to engine {alive.version}")
        return Connected(Session.from_alive(alive))

    if not launch_allowed or pinned_endpoint:
        cause = EngineUnreachable(
            "Could not connect to the webservice and I'm not configured to "
            f"start one\n\tError: {alive_error}"
        )
        cause.__cause__ = alive_error
        return Failed(cause)

    launcher = launcher or ProcessLauncher()
    path = executable_path() if callable(executable_path) else executable_path
    logger.debug(f"Engine not alive ({alive_error}), executable: {path}")

    if is_gui_host(path):
        try:
            exit_code = await launcher.forward(path, argv)
        except OSError as e:
            cause = EngineUnreachable(f"Could not use the pipeline app: {e}")
            cause.__cause__ = e
            return Failed(cause)
        return ForwardedToHost(exit_code)

    try:
        process = launcher.launch(path)
    except OSError as e:
        cause = LaunchTimeout(f"Error bringing the pipeline up: {e}")
        cause.__cause__ = e
        return Failed(cause)

    alive = await launcher.wait_liveness(api, attempts, interval, cancel)
    if alive is None and cancel is not None and cancel.is_set():
        return Failed(
            LaunchCancelled(
                f"Error bringing the pipeline up: waiting for {path} was cancelled"
            )
        )
    if alive is None:
        return Failed(
            LaunchTimeout(
                f"Error bringing the pipeline up: no answer from {path} "
                f"after {attempts} attempts"
            )
        )

    logger.info(f"Launched engine {alive.version}")
    return LaunchedAndConnected(Session.from_alive(alive), process=process)
