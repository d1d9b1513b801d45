"""End-to-end tests: Link over HTTP against an in-process webservice.

Requests go through the real HttpEngineAPI; httpx's ASGI transport routes
them to the fake engine app instead of the network.
"""

from __future__ import annotations

import asyncio
import io

import httpx
import pytest

from fake_engine import RESULT_BYTES, SCRIPT_ID, EngineState, create_engine_app
from fakes import FakeLauncher
from pipelink.api import HttpEngineAPI
from pipelink.config import Settings
from pipelink.errors import EngineError, MissingCredentials, UnknownScript
from pipelink.link import Link
from pipelink.models import (
    JobRequest,
    JobStatus,
    LogLine,
    StylesheetParameter,
    Terminal,
)

pytestmark = pytest.mark.integration


def make_link(state: EngineState, settings: Settings | None = None) -> Link:
    settings = settings or Settings(message_interval=0.0)
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=create_engine_app(state)))
    api = HttpEngineAPI(settings.url, client=client)
    return Link(settings, api=api, launcher=FakeLauncher(), argv=[])


class TestJobRoundTrip:
    """Tests for a job from submission to results."""

    @pytest.mark.asyncio
    async def test_messages_follow_job_to_success(self):
        state = EngineState()
        link = make_link(state)
        await link.init()

        job, stream = await link.execute(
            JobRequest(
                script=SCRIPT_ID,
                nicename="book",
                inputs={"source": ["book.xml"]},
                stylesheet_parameters={
                    "duplex": StylesheetParameter(type="boolean", value="true")
                },
            )
        )
        async with stream:
            events = await asyncio.wait_for(stream.collect(), timeout=10)

        lines = [e for e in events if isinstance(e, LogLine)]
        assert job.id == "job-1"
        assert [(line.text, line.depth) for line in lines] == [
            ("Validating input", 0),
            ("Converting", 0),
            ("Volume 1", 1),
            ("Volume 2", 1),
            ("Done", 0),
        ]
        assert events[-1] == Terminal(status=JobStatus.SUCCESS)
        assert state.msg_seqs == [-1, 0, 2]

    @pytest.mark.asyncio
    async def test_wire_request_shape(self):
        state = EngineState()
        link = make_link(state)
        await link.init()

        await link.execute(
            JobRequest(
                script=SCRIPT_ID,
                options={"stylesheet": ["a.css", "b.css"], "duplex": ["true"]},
                stylesheet_parameters={"w": StylesheetParameter(type="integer", value="40")},
                background=True,
            )
        )

        body = state.requests[0]
        assert body["script"]["href"] == f"http://localhost:8181/ws/scripts/{SCRIPT_ID}"
        options = {o["name"]: o for o in body["options"]}
        assert [i["value"] for i in options["stylesheet"]["items"]] == ["a.css", "b.css"]
        assert options["duplex"]["value"] == "true"
        assert options["stylesheet-parameters"]["items"] == [{"value": "(w: 40)"}]
        assert body["options"][-1]["name"] == "stylesheet-parameters"

    @pytest.mark.asyncio
    async def test_results_log_and_delete(self):
        state = EngineState()
        async with make_link(state) as link:
            await link.init()
            job, _ = await link.execute(JobRequest(script=SCRIPT_ID, background=True))
            sink = io.BytesIO()

            await link.results(job.id, sink)
            log = await link.log(job.id)
            deleted = await link.delete(job.id)

        assert sink.getvalue() == RESULT_BYTES
        assert log.startswith(b"[INFO]")
        assert deleted
        assert state.polls == {}

    @pytest.mark.asyncio
    async def test_unknown_script(self):
        link = make_link(EngineState())
        await link.init()

        with pytest.raises(UnknownScript):
            await link.execute(JobRequest(script="nope"))

    @pytest.mark.asyncio
    async def test_session_from_engine(self):
        link = make_link(EngineState())
        await link.init()

        assert link.version == "1.14.0"
        assert link.is_local


class TestAuthentication:
    """Tests for signed requests against an authenticating engine."""

    @pytest.mark.asyncio
    async def test_signed_requests_accepted(self):
        state = EngineState(secret="s3cret")
        settings = Settings(client_key="client", client_secret="s3cret", message_interval=0.0)
        link = make_link(state, settings)
        await link.init()

        scripts = await link.scripts()

        assert [s.id for s in scripts] == [SCRIPT_ID]

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self):
        state = EngineState(secret="s3cret")
        settings = Settings(client_key="client", client_secret="guess", message_interval=0.0)
        link = make_link(state, settings)
        await link.init()

        with pytest.raises(EngineError) as exc_info:
            await link.jobs()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        link = make_link(EngineState(secret="s3cret"))

        with pytest.raises(MissingCredentials):
            await link.init()
