"""HTTP client for the agent API server running inside each sandbox."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from sandbox_bridge.errors import SandboxAPIError

log = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_TIMEOUT = 30.0


@dataclass
class ExecEvent:
    type: str  # "stdout", "stderr" or "exit"
    data: str = ""
    code: Optional[int] = None


def _parse_sse_line(line: str) -> Optional[ExecEvent]:
    if not line.startswith("data: "):
        return None
    try:
        payload = json.loads(line[len("data: "):])
    except json.JSONDecodeError:
        log.warning(f"Could not parse execute event: {line!r}")
        return None
    kind = payload.get("type")
    if kind in ("stdout", "stderr"):
        return ExecEvent(type=kind, data=payload.get("data", ""))
    if kind == "exit":
        return ExecEvent(type="exit", code=payload.get("code"))
    return None


class SandboxAPIClient:
    def __init__(
        self,
        api_port: int,
        cdp_port: Optional[int] = None,
        host: str = DEFAULT_HOST,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.host = host
        self.api_port = api_port
        self.cdp_port = cdp_port
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @property
    def api_url(self) -> str:
        return f"http://{self.host}:{self.api_port}"

    @property
    def cdp_endpoint(self) -> Optional[str]:
        if self.cdp_port is None:
            return None
        return f"http://{self.host}:{self.cdp_port}"

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        response = await self._client.request(method, path, json=body)
        try:
            payload = response.json()
        except ValueError:
            raise SandboxAPIError(
                f"Failed to parse response from {path}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            message = payload.get("error") if isinstance(payload, dict) else None
            raise SandboxAPIError(
                message or f"HTTP {response.status_code}", status_code=response.status_code
            )
        return payload

    async def health(self) -> dict:
        return await self._request("GET", "/health")

    async def status(self) -> dict:
        return await self._request("GET", "/status")

    async def wait_for_healthy(self, max_attempts: int = 30, interval: float = 1.0) -> bool:
        for _ in range(max_attempts):
            try:
                result = await self.health()
                if result.get("status") == "healthy":
                    return True
            except (httpx.HTTPError, SandboxAPIError):
                pass  # not up yet
            await asyncio.sleep(interval)
        return False

    async def heartbeat(self) -> bool:
        result = await self._request("POST", "/heartbeat")
        return bool(result.get("success")) if isinstance(result, dict) else False

    async def execute(self, prompt: str, **options: Any) -> AsyncIterator[ExecEvent]:
        """Stream stdout/stderr chunks and a terminal exit event.

        Closing the iterator (or cancelling the consuming task) drops the
        connection; call ``stop()`` to abort the run inside the sandbox too.
        """
        body = {"prompt": prompt, **{k: v for k, v in options.items() if v is not None}}
        try:
            async with self._client.stream(
                "POST", "/execute", json=body, timeout=httpx.Timeout(self.timeout, read=None)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise SandboxAPIError(
                        f"Execute failed: HTTP {response.status_code}",
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    event = _parse_sse_line(line)
                    if event is None:
                        continue
                    yield event
                    if event.type == "exit":
                        return
        except httpx.HTTPError as e:
            yield ExecEvent(type="stderr", data=f"Connection error: {e}")
            yield ExecEvent(type="exit", code=1)

    async def stop(self) -> dict:
        return await self._request("POST", "/stop")

    async def cdp_info(self) -> dict:
        return await self._request("GET", "/cdp/info")

    async def aclose(self) -> None:
        await self._client.aclose()
