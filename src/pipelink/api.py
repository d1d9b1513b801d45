"""Engine webservice API.

`EngineAPI` is the capability the link consumes. `HttpEngineAPI` is the
httpx implementation talking to a running webservice.

Authenticated requests carry authid/time/nonce query parameters and a
`sign` parameter: base64(HMAC-SHA1(client_secret, url-so-far)).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Protocol, Type, TypeVar
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ValidationError

from pipelink import __version__
from pipelink.errors import EngineError, UnknownScript
from pipelink.models import (
    Alive,
    Client,
    Job,
    JobSizes,
    Property,
    QueueJob,
    Script,
    ScriptSummary,
    StylesheetParameters,
    StylesheetParametersRequest,
    WireJobRequest,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

M = TypeVar("M", bound=BaseModel)


class EngineAPI(Protocol):
    """Operations the link needs from the engine webservice."""

    def set_url(self, url: str) -> None: ...

    def set_credentials(self, key: str, secret: str) -> None: ...

    async def alive(self) -> Alive: ...

    async def scripts(self) -> List[ScriptSummary]: ...

    async def script(self, script_id: str) -> Script: ...

    async def script_url(self, script_id: str) -> str: ...

    async def submit_job(self, request: WireJobRequest, data: bytes) -> Job: ...

    async def job(self, job_id: str, since: int) -> Job: ...

    async def delete_job(self, job_id: str) -> bool: ...

    async def results(self, job_id: str, sink: BinaryIO) -> bool: ...

    async def log(self, job_id: str) -> bytes: ...

    async def jobs(self) -> List[Job]: ...

    async def halt(self, key: str) -> None: ...

    async def clients(self) -> List[Client]: ...

    async def new_client(self, client: Client) -> Client: ...

    async def modify_client(self, client: Client, client_id: str) -> Client: ...

    async def delete_client(self, client_id: str) -> bool: ...

    async def client(self, client_id: str) -> Client: ...

    async def properties(self) -> List[Property]: ...

    async def sizes(self) -> JobSizes: ...

    async def queue(self) -> List[QueueJob]: ...

    async def move_up(self, job_id: str) -> List[QueueJob]: ...

    async def move_down(self, job_id: str) -> List[QueueJob]: ...

    async def stylesheet_parameters(
        self, request: StylesheetParametersRequest
    ) -> StylesheetParameters: ...

    async def aclose(self) -> None: ...


def sign_url(url: str, secret: str) -> str:
    """Base64 HMAC-SHA1 signature of a URL."""
    digest = hmac.new(secret.encode("utf-8"), url.encode("utf-8"), hashlib.sha1)
    return base64.b64encode(digest.digest()).decode("ascii")


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _nonce() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(30))


class HttpEngineAPI:
    """EngineAPI over HTTP.

    Args:
        url: Webservice base URL ending with a slash (Settings.url)
        client: Optional preconfigured AsyncClient (tests pass one with a
            mock or ASGI transport); closed by aclose only if created here
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": f"pipelink/{__version__}"},
        )
        self._key: str | None = None
        self._secret: str | None = None

        # Replaceable for deterministic signatures in tests
        self.clock: Callable[[], str] = _timestamp
        self.nonce: Callable[[], str] = _nonce

    @property
    def url(self) -> str:
        return self._url

    def set_url(self, url: str) -> None:
        self._url = url

    def set_credentials(self, key: str, secret: str) -> None:
        self._key = key
        self._secret = secret

    def build_url(self, path: str, params: dict[str, Any] | None = None) -> str:
        """Absolute URL for path, signed when credentials are set."""
        query = dict(params or {})
        if self._key and self._secret:
            query.update(authid=self._key, time=self.clock(), nonce=self.nonce())
        url = self._url + path
        if query:
            url += "?" + urlencode(query)
        if self._key and self._secret:
            url += "&sign=" + quote(sign_url(url, self._secret), safe="")
        return url

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        url = self.build_url(path, params)
        logger.debug(f"{method} {url}")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise EngineError(f"{method} {path} failed: {e}") from e
        _raise_for_status(method, path, response)
        return response

    async def _json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._request(method, path, **kwargs)
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise EngineError(f"{method} {path}: invalid JSON response: {e}") from e
        if not isinstance(data, dict):
            raise EngineError(
                f"{method} {path}: unexpected response: expected an object, "
                f"got {type(data).__name__}"
            )
        return data

    async def _one(self, model: Type[M], method: str, path: str, **kwargs: Any) -> M:
        data = await self._json(method, path, **kwargs)
        return _parse(model, data, f"{method} {path}")

    async def _many(
        self, model: Type[M], key: str, method: str, path: str, **kwargs: Any
    ) -> List[M]:
        data = await self._json(method, path, **kwargs)
        return _parse_list(model, data, key, f"{method} {path}")

    # --- Discovery ---

    async def alive(self) -> Alive:
        return await self._one(Alive, "GET", "alive")

    async def scripts(self) -> List[ScriptSummary]:
        return await self._many(ScriptSummary, "scripts", "GET", "scripts")

    async def script(self, script_id: str) -> Script:
        try:
            return await self._one(Script, "GET", f"scripts/{quote(script_id)}")
        except EngineError as e:
            if e.status_code == 404:
                raise UnknownScript(script_id) from e
            raise

    async def script_url(self, script_id: str) -> str:
        """Resolve the submission href for a script id."""
        script = await self.script(script_id)
        return script.href or self._url + f"scripts/{quote(script_id)}"

    # --- Jobs ---

    async def submit_job(self, request: WireJobRequest, data: bytes) -> Job:
        body = request.model_dump(mode="json")
        if data:
            files = {
                "job-request": (
                    "job-request.json",
                    json.dumps(body).encode("utf-8"),
                    "application/json",
                ),
                "job-data": ("job-data.zip", data, "application/zip"),
            }
            return await self._one(Job, "POST", "jobs", files=files)
        return await self._one(Job, "POST", "jobs", json=body)

    async def job(self, job_id: str, since: int) -> Job:
        return await self._one(
            Job, "GET", f"jobs/{quote(job_id)}", params={"msgSeq": since}
        )

    async def delete_job(self, job_id: str) -> bool:
        await self._request("DELETE", f"jobs/{quote(job_id)}")
        return True

    async def results(self, job_id: str, sink: BinaryIO) -> bool:
        """Stream the zipped results into sink."""
        path = f"jobs/{quote(job_id)}/result"
        url = self.build_url(path)
        try:
            async with self._client.stream("GET", url) as response:
                if response.status_code >= 400:
                    await response.aread()
                    _raise_for_status("GET", path, response)
                async for chunk in response.aiter_bytes():
                    sink.write(chunk)
        except httpx.HTTPError as e:
            raise EngineError(f"GET {path} failed: {e}") from e
        return True

    async def log(self, job_id: str) -> bytes:
        response = await self._request("GET", f"jobs/{quote(job_id)}/log")
        return response.content

    async def jobs(self) -> List[Job]:
        return await self._many(Job, "jobs", "GET", "jobs")

    # --- Administration ---

    async def halt(self, key: str) -> None:
        await self._request("GET", f"admin/halt/{quote(key)}")

    async def clients(self) -> List[Client]:
        return await self._many(Client, "clients", "GET", "admin/clients")

    async def new_client(self, client: Client) -> Client:
        return await self._one(
            Client, "POST", "admin/clients", json=client.model_dump(mode="json")
        )

    async def modify_client(self, client: Client, client_id: str) -> Client:
        return await self._one(
            Client,
            "PUT",
            f"admin/clients/{quote(client_id)}",
            json=client.model_dump(mode="json"),
        )

    async def delete_client(self, client_id: str) -> bool:
        await self._request("DELETE", f"admin/clients/{quote(client_id)}")
        return True

    async def client(self, client_id: str) -> Client:
        return await self._one(Client, "GET", f"admin/clients/{quote(client_id)}")

    async def properties(self) -> List[Property]:
        return await self._many(Property, "properties", "GET", "admin/properties")

    async def sizes(self) -> JobSizes:
        return await self._one(JobSizes, "GET", "admin/sizes")

    async def queue(self) -> List[QueueJob]:
        return await self._many(QueueJob, "queue", "GET", "queue")

    async def move_up(self, job_id: str) -> List[QueueJob]:
        return await self._many(QueueJob, "queue", "GET", f"queue/up/{quote(job_id)}")

    async def move_down(self, job_id: str) -> List[QueueJob]:
        return await self._many(
            QueueJob, "queue", "GET", f"queue/down/{quote(job_id)}"
        )

    async def stylesheet_parameters(
        self, request: StylesheetParametersRequest
    ) -> StylesheetParameters:
        body = {
            "media": {"value": request.medium},
            "user_agent_stylesheet": {"mediatype": request.content_type},
        }
        files = {
            "parameters": (
                "parameters.json",
                json.dumps(body).encode("utf-8"),
                "application/json",
            ),
            "data": ("data.zip", request.data, "application/zip"),
        }
        return await self._one(
            StylesheetParameters, "POST", "stylesheet-parameters", files=files
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _parse(model: Type[M], data: Any, where: str) -> M:
    """Validate an engine payload, reporting bad shapes as EngineError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise EngineError(
            f"{where}: unexpected response: {e.error_count()} invalid field(s) "
            f"for {model.__name__}"
        ) from e


def _parse_list(model: Type[M], data: Dict[str, Any], key: str, where: str) -> List[M]:
    items = data.get(key) or []
    if not isinstance(items, list):
        raise EngineError(f"{where}: unexpected response: '{key}' is not a list")
    return [_parse(model, item, where) for item in items]


def _raise_for_status(method: str, path: str, response: httpx.Response) -> None:
    if response.status_code < 400:
        return
    detail = response.text.strip() or response.reason_phrase
    raise EngineError(
        f"{method} {path}: engine returned {response.status_code}: {detail}",
        status_code=response.status_code,
    )
