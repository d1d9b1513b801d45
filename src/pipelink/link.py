"""Link: the one object client code talks to.

Composes bring-up, request marshalling and message streaming on top of an
EngineAPI, and keeps the session learned at bring-up.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from typing import TYPE_CHECKING, BinaryIO, List, Sequence, Tuple

from pipelink.api import HttpEngineAPI
from pipelink.bringup import bring_up, endpoint_pinned
from pipelink.errors import LinkError, LinkNotInitialized, MissingCredentials
from pipelink.launcher import ProcessLauncher
from pipelink.marshal import marshal_job_request
from pipelink.models import (
    BringUpOutcome,
    Client,
    Failed,
    ForwardedToHost,
    Job,
    JobRequest,
    LaunchedAndConnected,
    JobSizes,
    Property,
    QueueJob,
    Script,
    Session,
    StylesheetParameters,
    StylesheetParametersRequest,
)
from pipelink.streaming import MessageStream, stream_job_messages

if TYPE_CHECKING:
    from pipelink.api import EngineAPI
    from pipelink.config import Settings

logger = logging.getLogger(__name__)


class Link:
    """Client-side link to the engine.

    Args:
        settings: Link settings
        api: Engine API (an HttpEngineAPI on settings.url when omitted)
        launcher: Process launcher used during bring-up
        argv: Command line arguments, used to detect a pinned endpoint and
            forwarded verbatim to the desktop app (sys.argv[1:] by default)
        pinned_endpoint: Whether host/port were chosen explicitly (detected
            from argv when omitted)
    """

    def __init__(
        self,
        settings: "Settings",
        api: "EngineAPI | None" = None,
        launcher: ProcessLauncher | None = None,
        argv: Sequence[str] | None = None,
        pinned_endpoint: bool | None = None,
    ):
        self._settings = settings
        self._api: "EngineAPI" = api or HttpEngineAPI(settings.url)
        self._launcher = launcher or ProcessLauncher()
        self._argv = list(sys.argv[1:] if argv is None else argv)
        self._pinned = (
            endpoint_pinned(self._argv) if pinned_endpoint is None else pinned_endpoint
        )
        self._session: Session | None = None
        self._engine_process: subprocess.Popen | None = None
        self._streams: List[MessageStream] = []

    @property
    def api(self) -> "EngineAPI":
        return self._api

    @property
    def initialized(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Session:
        if self._session is None:
            raise LinkNotInitialized("Link used before init()")
        return self._session

    @property
    def version(self) -> str:
        return self.session.version

    @property
    def is_local(self) -> bool:
        """True if the engine may read the local filesystem."""
        return self.session.local_filesystem_allowed

    @property
    def engine_process(self) -> subprocess.Popen | None:
        """Handle of the engine launched by init, if any."""
        return self._engine_process

    async def init(self) -> BringUpOutcome:
        """Bring the engine up and set credentials if required.

        Returns:
            The bring-up outcome. ForwardedToHost leaves the link
            uninitialized; the caller should exit with its code.

        Raises:
            EngineUnreachable, LaunchTimeout: Bring-up failed
            MissingCredentials: Authentication required but not configured
        """
        logger.info("Initialising link")
        self._api.set_url(self._settings.url)

        outcome = await bring_up(
            self._api,
            launch_allowed=self._settings.starting,
            pinned_endpoint=self._pinned,
            executable_path=self._settings.exec_path,
            argv=self._argv,
            launcher=self._launcher,
            attempts=self._settings.launch_attempts,
            interval=self._settings.launch_interval,
        )
        if isinstance(outcome, Failed):
            raise outcome.cause
        if isinstance(outcome, ForwardedToHost):
            logger.info(f"Invocation forwarded, exit code {outcome.exit_code}")
            return outcome

        if isinstance(outcome, LaunchedAndConnected):
            self._engine_process = outcome.process
        session = outcome.session
        if session.authentication_required:
            if not self._settings.has_credentials:
                raise MissingCredentials(
                    "Authentication required but client_key and client_secret "
                    "are not set. Please, check the configuration"
                )
            self._api.set_credentials(
                self._settings.client_key, self._settings.client_secret
            )

        logger.debug(f"Session: {session!r}")
        self._session = session
        return outcome

    def _require_init(self) -> None:
        if self._session is None:
            raise LinkNotInitialized("Link used before init()")

    # --- Scripts ---

    async def scripts(self) -> List[Script]:
        """All scripts with their complete definitions."""
        self._require_init()
        scripts = []
        for summary in await self._api.scripts():
            try:
                scripts.append(await self._api.script(summary.id))
            except LinkError as e:
                raise LinkError(f"Error loading script {summary.id}: {e}") from e
        return scripts

    async def script(self, script_id: str) -> Script:
        self._require_init()
        return await self._api.script(script_id)

    # --- Jobs ---

    async def execute(self, request: JobRequest) -> Tuple[Job, MessageStream]:
        """Submit a job and stream its messages.

        The last event of the stream is the job's terminal status (or a
        StreamError). Background jobs get an empty, already closed stream.

        Raises:
            UnknownScript: If the script id cannot be resolved
        """
        self._require_init()
        wire = await marshal_job_request(request, self._api)
        logger.debug(f"Submitting job for {request.script}, data len {len(request.data)}")
        job = await self._api.submit_job(wire, request.data)

        if request.background:
            return job, MessageStream.empty()
        stream = stream_job_messages(
            self._api, job.id, interval=self._settings.message_interval
        )
        self._streams = [s for s in self._streams if s.is_running]
        self._streams.append(stream)
        return job, stream.start()

    async def job(self, job_id: str) -> Job:
        self._require_init()
        return await self._api.job(job_id, 0)

    async def delete(self, job_id: str) -> bool:
        self._require_init()
        return await self._api.delete_job(job_id)

    async def results(self, job_id: str, sink: BinaryIO) -> bool:
        """Write the zipped results into sink."""
        self._require_init()
        return await self._api.results(job_id, sink)

    async def log(self, job_id: str) -> bytes:
        self._require_init()
        return await self._api.log(job_id)

    async def jobs(self) -> List[Job]:
        self._require_init()
        return await self._api.jobs()

    async def stylesheet_parameters(
        self, request: StylesheetParametersRequest
    ) -> StylesheetParameters:
        self._require_init()
        logger.debug(f"Stylesheet parameters request, data len {len(request.data)}")
        return await self._api.stylesheet_parameters(request)

    # --- Administration ---

    async def halt(self, key: str) -> None:
        self._require_init()
        await self._api.halt(key)

    async def clients(self) -> List[Client]:
        self._require_init()
        return await self._api.clients()

    async def new_client(self, client: Client) -> Client:
        self._require_init()
        return await self._api.new_client(client)

    async def delete_client(self, client_id: str) -> bool:
        self._require_init()
        return await self._api.delete_client(client_id)

    async def client(self, client_id: str) -> Client:
        self._require_init()
        return await self._api.client(client_id)

    async def modify_client(self, client: Client, client_id: str) -> Client:
        self._require_init()
        return await self._api.modify_client(client, client_id)

    async def properties(self) -> List[Property]:
        self._require_init()
        return await self._api.properties()

    async def sizes(self) -> JobSizes:
        self._require_init()
        return await self._api.sizes()

    async def queue(self) -> List[QueueJob]:
        self._require_init()
        return await self._api.queue()

    async def move_up(self, job_id: str) -> List[QueueJob]:
        self._require_init()
        return await self._api.move_up(job_id)

    async def move_down(self, job_id: str) -> List[QueueJob]:
        self._require_init()
        return await self._api.move_down(job_id)

    # --- Lifecycle ---

    async def aclose(self) -> None:
        """Stop open message streams, then close the API transport."""
        streams, self._streams = self._streams, []
        for stream in streams:
            await stream.aclose()
        await self._api.aclose()

    async def __aenter__(self) -> "Link":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
