"""Pydantic models for the pipeline link.

Three families live here:
- Engine shapes (what the webservice sends and receives)
- Caller-facing request and session types
- Stream events and bring-up outcomes
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job states reported by the engine."""

    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    FAIL = "FAIL"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.ERROR, JobStatus.FAIL})


# --- Engine shapes ---


class Alive(BaseModel):
    """Liveness response: engine identity and capability flags."""

    version: str = ""
    authentication: bool = False
    fs_allow: bool = Field(False, description="Engine may read the local filesystem")


class ScriptPort(BaseModel):
    name: str
    nicename: str = ""
    desc: str = ""
    media_type: List[str] = Field(default_factory=list)
    sequence: bool = False
    required: bool = True


class ScriptOption(BaseModel):
    name: str
    nicename: str = ""
    desc: str = ""
    type: str = "string"
    required: bool = False
    default: str = ""
    sequence: bool = False
    ordered: bool = False


class ScriptSummary(BaseModel):
    """Entry of the script listing."""

    id: str
    href: str = ""
    nicename: str = ""
    description: str = ""


class Script(ScriptSummary):
    """Full script definition."""

    version: str = ""
    homepage: str = ""
    inputs: List[ScriptPort] = Field(default_factory=list)
    options: List[ScriptOption] = Field(default_factory=list)


class JobMessage(BaseModel):
    """Node of a job's message tree."""

    sequence: int
    level: str = "INFO"
    content: str = ""
    messages: List[JobMessage] = Field(default_factory=list)


class JobMessages(BaseModel):
    progress: float = 0.0
    messages: List[JobMessage] = Field(default_factory=list)


class ScriptRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    href: str


class Job(BaseModel):
    """Job as reported by the engine."""

    id: str
    href: str = ""
    status: JobStatus = JobStatus.IDLE
    nicename: str = ""
    priority: str = ""
    script: Optional[ScriptRef] = None
    messages: JobMessages = Field(default_factory=JobMessages)


class Client(BaseModel):
    id: str
    secret: str = Field("", repr=False)
    role: str = "CLIENTAPP"
    contact: str = ""
    priority: str = "medium"


class Property(BaseModel):
    name: str
    value: str = ""
    desc: str = ""


class JobSize(BaseModel):
    id: str
    context: int = 0
    output: int = 0
    log: int = 0


class JobSizes(BaseModel):
    total: int = 0
    jobs: List[JobSize] = Field(default_factory=list)


class QueueJob(BaseModel):
    id: str
    href: str = ""
    computed_priority: float = 0.0
    job_priority: str = ""
    client_priority: str = ""
    relative_time: float = 0.0
    time_stamp: int = 0


# --- Wire job request ---


class Item(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str


class Input(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    items: List[Item] = Field(default_factory=list)


class Option(BaseModel):
    """Wire option: scalar value, or an item list for multi-valued options."""

    model_config = ConfigDict(frozen=True)

    name: str
    value: Optional[str] = None
    items: List[Item] = Field(default_factory=list)

    @property
    def is_scalar(self) -> bool:
        return self.value is not None


class WireJobRequest(BaseModel):
    """Job request in the engine's shape. Never mutated after construction."""

    model_config = ConfigDict(frozen=True)

    script: ScriptRef
    nicename: str = ""
    priority: str = ""
    inputs: List[Input] = Field(default_factory=list)
    options: List[Option] = Field(default_factory=list)

    def option(self, name: str) -> Optional[Option]:
        return next((o for o in self.options if o.name == name), None)


# --- Caller-facing requests ---


class StylesheetParameter(BaseModel):
    """Typed stylesheet parameter; type is an XML Schema datatype name."""

    type: str = "string"
    value: str


class JobRequest(BaseModel):
    """Job request as callers build it."""

    script: str = Field(..., description="Script id")
    nicename: str = ""
    priority: str = ""
    inputs: Dict[str, List[Union[str, Path]]] = Field(default_factory=dict)
    options: Dict[str, List[str]] = Field(default_factory=dict)
    stylesheet_parameters: Dict[str, StylesheetParameter] = Field(
        default_factory=dict
    )
    data: bytes = Field(b"", repr=False, description="Zipped job resources")
    background: bool = False


class StylesheetParametersRequest(BaseModel):
    """Ask the engine which parameters a user stylesheet accepts."""

    medium: str = "embossed"
    content_type: str = "application/xhtml+xml"
    data: bytes = Field(b"", repr=False)


class StylesheetParameterInfo(BaseModel):
    name: str
    type: str = "string"
    default: str = ""
    nicename: str = ""
    description: str = ""


class StylesheetParameters(BaseModel):
    parameters: List[StylesheetParameterInfo] = Field(default_factory=list)


class Session(BaseModel):
    """Engine facts captured by a successful bring-up."""

    model_config = ConfigDict(frozen=True)

    version: str
    authentication_required: bool = False
    local_filesystem_allowed: bool = False

    @classmethod
    def from_alive(cls, alive: Alive) -> "Session":
        return cls(
            version=alive.version,
            authentication_required=alive.authentication,
            local_filesystem_allowed=alive.fs_allow,
        )


# --- Stream events ---

_LINE_BREAK = re.compile(r"\r?\n|\r")


class StreamEvent(BaseModel):
    """Base stream event."""

    model_config = ConfigDict(frozen=True)

    event_type: str


class LogLine(StreamEvent):
    """One job message, flattened out of the message tree."""

    event_type: str = "job.log"
    text: str
    level: str
    depth: int = 0
    sequence: int
    status: JobStatus
    progress: float = 0.0

    def render(self) -> str:
        """Console representation: `[LEVEL]    <indent>text`.

        Continuation lines are aligned under the first line's text.
        """
        indent = "  " * self.depth
        level = f"[{self.level}]".ljust(10)
        lines = _LINE_BREAK.split(self.text)
        out = f"{level} {indent}{lines[0]}"
        for line in lines[1:]:
            out += f"\n{' ' * 11}{indent}{line}"
        return out

    def __str__(self) -> str:
        return self.render()


class ProgressOnly(StreamEvent):
    """Heartbeat emitted when a poll delivered no new message."""

    event_type: str = "job.progress"
    progress: float


class Terminal(StreamEvent):
    """Final status of the job; always the last event of a stream."""

    event_type: str = "job.terminal"
    status: JobStatus


class StreamError(StreamEvent):
    """A poll failed; the stream ends after this event."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event_type: str = "stream.error"
    cause: str
    error: Optional[Exception] = Field(None, exclude=True, repr=False)


Event = Union[LogLine, ProgressOnly, Terminal, StreamError]


# --- Bring-up outcomes ---


@dataclass(frozen=True)
class Connected:
    """An engine answered the first liveness check."""

    session: Session


@dataclass(frozen=True)
class LaunchedAndConnected:
    """A local engine was launched and became alive.

    process is the handle of the launched engine, kept so the detached
    child is not reaped (and warned about) while it still runs.
    """

    session: Session
    process: Optional[subprocess.Popen] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ForwardedToHost:
    """The invocation ran inside the desktop app; the caller should exit."""

    exit_code: int


@dataclass(frozen=True)
class Failed:
    cause: Exception


BringUpOutcome = Union[Connected, LaunchedAndConnected, ForwardedToHost, Failed]


JobMessage.model_rebuild()
