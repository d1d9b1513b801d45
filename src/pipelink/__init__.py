"""pipelink: client-side link to a document-processing pipeline webservice.

Brings up a reachable engine (connecting, launching a local instance, or
forwarding to the desktop app), submits jobs and streams their messages.

Usage:
    from pipelink import Link, load_settings

    async with Link(load_settings()) as link:
        await link.init()
        job, stream = await link.execute(request)
        async for event in stream:
            ...
"""

__version__ = "0.3.0"

from pipelink.config import Settings, load_settings
from pipelink.errors import (
    ConfigError,
    EngineError,
    EngineUnreachable,
    LaunchCancelled,
    LaunchTimeout,
    LinkError,
    LinkNotInitialized,
    MissingCredentials,
    UnknownScript,
)
from pipelink.link import Link
from pipelink.models import (
    Connected,
    Failed,
    ForwardedToHost,
    JobRequest,
    LaunchedAndConnected,
    LogLine,
    ProgressOnly,
    Session,
    StreamError,
    StylesheetParameter,
    Terminal,
)

__all__ = [
    "__version__",
    # Config
    "Settings",
    "load_settings",
    # Errors
    "ConfigError",
    "EngineError",
    "EngineUnreachable",
    "LaunchCancelled",
    "LaunchTimeout",
    "LinkError",
    "LinkNotInitialized",
    "MissingCredentials",
    "UnknownScript",
    # Link
    "Link",
    # Models
    "Connected",
    "Failed",
    "ForwardedToHost",
    "JobRequest",
    "LaunchedAndConnected",
    "LogLine",
    "ProgressOnly",
    "Session",
    "StreamError",
    "StylesheetParameter",
    "Terminal",
]
