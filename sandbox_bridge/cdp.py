"""External browser sessions reachable over the Chrome DevTools Protocol.

At most one externally launched (or adopted) browser is tracked at a time.
Its debugging endpoint is exposed twice: a loopback form for host-side
consumers and a container-routable form using the runtime's host alias.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import httpx

from sandbox_bridge.browsers import BrowserDetector, DetectedBrowser
from sandbox_bridge.config import BridgeConfig
from sandbox_bridge.errors import (
    BrowserNotFound,
    BrowserSessionConflict,
    CdpConnectFailed,
    SandboxError,
)
from sandbox_bridge.manager import CleanupStep
from sandbox_bridge.platforms import HostPlatform, current_platform

log = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "0.0.0.0", "::1"}
PROBE_TIMEOUT = 2.0
START_URL = "https://www.google.com"
# Docker Desktop reaches the host from 192.168.65.*, the Linux bridge from 172.17.*
ALLOWED_ORIGINS = "http://192.168.65.*,http://172.17.*,http://127.0.0.1"


def rewrite_endpoint_host(url: str, alias: str) -> str:
    """Swap a loopback host for ``alias``; everything else is kept verbatim."""
    parts = urlsplit(url)
    if parts.hostname not in LOOPBACK_HOSTS:
        return url
    prefix = f"{parts.scheme}://" if parts.scheme else "//"
    if not url.startswith(prefix):
        return url
    netloc = parts.netloc
    userinfo, at, hostport = netloc.rpartition("@")
    if hostport.startswith("["):
        port_part = hostport[hostport.index("]") + 1:]
    else:
        _, colon, port = hostport.partition(":")
        port_part = f"{colon}{port}"
    tail = url[len(prefix) + len(netloc):]
    return f"{prefix}{userinfo}{at}{alias}{port_part}{tail}"


@dataclass
class ExternalBrowserSession:
    browser_id: str
    browser_name: str
    cdp_port: int
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    container_alias: str = "host.docker.internal"
    started_at: float = field(default_factory=time.time)
    is_connected: bool = True

    @property
    def cdp_endpoint(self) -> str:
        return f"http://127.0.0.1:{self.cdp_port}"

    @property
    def cdp_endpoint_container(self) -> str:
        return f"http://{self.container_alias}:{self.cdp_port}"

    @property
    def adopted(self) -> bool:
        return self.process is None


@dataclass
class BrowserLaunch:
    session: ExternalBrowserSession
    reused: bool = False


class CdpBridge:
    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        platform: Optional[HostPlatform] = None,
        detector: Optional[BrowserDetector] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or BridgeConfig()
        self.platform = platform or current_platform()
        self.detector = detector or BrowserDetector(self.platform)
        self._http = httpx.AsyncClient(timeout=PROBE_TIMEOUT, transport=transport)
        self._browsers: dict[str, DetectedBrowser] = {}
        self._session: Optional[ExternalBrowserSession] = None
        self._lock = asyncio.Lock()

    # ── Browsers ─────────────────────────────────────────────────────

    async def initialize(self) -> list[DetectedBrowser]:
        browsers = await self.detector.detect()
        self._browsers = {b.id: b for b in browsers}
        log.info(f"Initialized with {len(browsers)} browsers")
        return browsers

    def register(self, browser: DetectedBrowser) -> None:
        self._browsers[browser.id] = browser

    @property
    def browsers(self) -> list[DetectedBrowser]:
        return list(self._browsers.values())

    def browser(self, browser_id: str) -> Optional[DetectedBrowser]:
        return self._browsers.get(browser_id)

    # ── Session state ────────────────────────────────────────────────

    @property
    def cdp_port(self) -> int:
        return self.config.external_cdp_port

    @property
    def active_session(self) -> Optional[ExternalBrowserSession]:
        return self._session

    @property
    def has_active_session(self) -> bool:
        return self._session is not None

    def status(self) -> dict:
        if not self._session:
            return {"active": False}
        s = self._session
        return {
            "active": True,
            "browser_id": s.browser_id,
            "browser_name": s.browser_name,
            "cdp_port": s.cdp_port,
            "cdp_endpoint": s.cdp_endpoint,
            "cdp_endpoint_container": s.cdp_endpoint_container,
            "adopted": s.adopted,
            "started_at": s.started_at,
            "connected": s.is_connected,
        }

    def profile_dir(self, browser_id: str) -> str:
        path = os.path.join(self.config.browser_profile_root, browser_id)
        os.makedirs(path, exist_ok=True)
        return path

    # ── Launch / close ───────────────────────────────────────────────

    async def launch(self, browser_id: str) -> BrowserLaunch:
        async with self._lock:
            return await self._launch_locked(browser_id)

    async def _launch_locked(self, browser_id: str) -> BrowserLaunch:
        browser = self._browsers.get(browser_id)
        if browser is None:
            raise BrowserNotFound(browser_id)
        port = self.cdp_port

        if self._session is not None:
            if self._session.browser_id != browser_id:
                raise BrowserSessionConflict(
                    f"Another browser ({self._session.browser_name}) is already running. "
                    "Please close it first."
                )
            if await self.check_connection(self._session.cdp_port):
                log.info(f"Reusing existing session for {browser_id}")
                self._session.is_connected = True
                return BrowserLaunch(self._session, reused=True)
            log.info("Previous session is dead, relaunching")
            self._reap(self._session)
            self._session = None

        alias = self.platform.container_host_alias()
        if await self.check_connection(port):
            # Something (likely a manually started browser) already serves CDP here.
            log.info(f"CDP port {port} already answering, adopting it")
            self._session = ExternalBrowserSession(
                browser_id=browser_id,
                browser_name=browser.name,
                cdp_port=port,
                container_alias=alias,
            )
            return BrowserLaunch(self._session, reused=True)

        args = [
            f"--remote-debugging-port={port}",
            # Containers reach the host through a non-loopback address.
            "--remote-debugging-address=0.0.0.0",
            f"--remote-allow-origins={ALLOWED_ORIGINS}",
            f"--user-data-dir={self.profile_dir(browser_id)}",
            START_URL,
        ]
        log.info(f"Launching {browser.name} on CDP port {port}")
        try:
            process = await asyncio.create_subprocess_exec(
                browser.executable_path,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise SandboxError(f"Failed to launch {browser.name}: {e}") from e

        try:
            connected = await self.wait_for_connection(port, self.config.cdp_connect_timeout)
        except BaseException:
            await self._kill(process)
            raise
        if not connected:
            await self._kill(process)
            raise CdpConnectFailed("Browser launched but CDP connection failed. Try again.")

        self._session = ExternalBrowserSession(
            browser_id=browser_id,
            browser_name=browser.name,
            cdp_port=port,
            process=process,
            container_alias=alias,
        )
        log.info(f"Browser launched successfully (CDP port {port})")
        return BrowserLaunch(self._session)

    async def close(self) -> list[CleanupStep]:
        async with self._lock:
            session, self._session = self._session, None
            if session is None:
                return []
            if session.process is None:
                log.info("Session closed (adopted browser left running)")
                return [CleanupStep("forget", session.browser_id, True, "adopted")]
            try:
                await self._kill(session.process)
            except ProcessLookupError:
                pass
            except OSError as e:
                log.warning(f"Failed to kill {session.browser_name}: {e}")
                return [CleanupStep("kill", session.browser_id, False, str(e))]
            log.info("Session closed")
            return [CleanupStep("kill", session.browser_id, True)]

    async def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.kill()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            log.warning(f"Browser process {process.pid} did not exit after kill")

    def _reap(self, session: ExternalBrowserSession) -> None:
        if session.process is not None and session.process.returncode is None:
            try:
                session.process.kill()
            except ProcessLookupError:
                pass

    # ── Debugging endpoint ───────────────────────────────────────────

    async def fetch_version(self, port: Optional[int] = None) -> dict:
        port = port or self.cdp_port
        response = await self._http.get(f"http://127.0.0.1:{port}/json/version")
        response.raise_for_status()
        return response.json()

    async def list_targets(self, port: Optional[int] = None) -> list[dict]:
        port = port or self.cdp_port
        response = await self._http.get(f"http://127.0.0.1:{port}/json")
        response.raise_for_status()
        return response.json()

    async def check_connection(self, port: int) -> bool:
        try:
            response = await self._http.get(f"http://127.0.0.1:{port}/json/version")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def wait_for_connection(self, port: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if await self.check_connection(port):
                return True
            await asyncio.sleep(self.config.cdp_poll_interval)
        return False

    async def container_ws_endpoint(self, port: Optional[int] = None) -> str:
        """WebSocket debugger URL as seen from inside a container."""
        if port is None and self._session is not None:
            port = self._session.cdp_port
        try:
            descriptor = await self.fetch_version(port)
        except (httpx.HTTPError, ValueError) as e:
            raise CdpConnectFailed(f"Could not read CDP version descriptor: {e}") from e
        ws_url = descriptor.get("webSocketDebuggerUrl") if isinstance(descriptor, dict) else None
        if not ws_url:
            raise CdpConnectFailed("CDP version descriptor has no webSocketDebuggerUrl")
        return rewrite_endpoint_host(ws_url, self.platform.container_host_alias())

    async def aclose(self) -> None:
        await self._http.aclose()
