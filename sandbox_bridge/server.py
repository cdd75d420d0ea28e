#!/usr/bin/env python3
"""MCP server exposing browser-automation container sandboxes as tools."""

import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from mcp.server.fastmcp import FastMCP

from sandbox_bridge.cdp import CdpBridge
from sandbox_bridge.config import ENV_PREFIX, BridgeConfig
from sandbox_bridge.emergency import install_emergency_handlers
from sandbox_bridge.errors import SandboxError
from sandbox_bridge.events import EventBus
from sandbox_bridge.manager import CleanupStep, SandboxInstance, SandboxManager, SandboxOptions
from sandbox_bridge.platforms import HostPlatform, current_platform
from sandbox_bridge.session import SandboxSession

log = logging.getLogger(__name__)

# ── Logging (stderr only, stdout is MCP protocol) ───────────────────────


def configure_logging() -> None:
    level = os.environ.get(f"{ENV_PREFIX}LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )


# ── App wiring ───────────────────────────────────────────────────────────


class BridgeApp:
    """Owns every long-lived component for one server process."""

    def __init__(
        self,
        config: BridgeConfig,
        events: EventBus,
        manager: SandboxManager,
        bridge: CdpBridge,
        session: SandboxSession,
    ):
        self.config = config
        self.events = events
        self.manager = manager
        self.bridge = bridge
        self.session = session
        self._started = False

    @classmethod
    def from_config(
        cls, config: Optional[BridgeConfig] = None, platform: Optional[HostPlatform] = None
    ) -> "BridgeApp":
        config = config or BridgeConfig()
        platform = platform or current_platform()
        events = EventBus()
        manager = SandboxManager(config=config, events=events, platform=platform)
        bridge = CdpBridge(config=config, platform=platform)
        session = SandboxSession(manager, bridge, config)
        return cls(config, events, manager, bridge, session)

    async def ensure_started(self):
        if self._started:
            return
        self._started = True

        if await self.manager.initialize():
            await self.manager.cleanup_orphaned_instances()
            if not await self.manager.is_image_available():
                log.warning(
                    f"Image '{self.config.image}' not found; sandbox creation will fail until it is pulled or built"
                )
        await self.bridge.initialize()
        log.info(f"Sandbox bridge ready (image={self.config.image})")

    async def shutdown(self) -> list[CleanupStep]:
        steps = await self.session.deactivate()
        steps.extend(await self.bridge.close())
        steps.extend(await self.manager.shutdown())
        await self.bridge.aclose()
        return steps


def app_lifespan(app: BridgeApp):
    """Run the graceful shutdown when the MCP server exits."""

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[BridgeApp]:
        try:
            yield app
        finally:
            log.info("Shutting down sandbox bridge...")
            failed = [s for s in await app.shutdown() if not s.ok]
            if failed:
                log.warning(f"Shutdown: {len(failed)} cleanup step(s) failed")

    return lifespan


# ── Formatting ───────────────────────────────────────────────────────────


def _format_instance(instance: SandboxInstance) -> str:
    ports = instance.ports
    parts = [f"{instance.id:12s} {instance.container_name}", instance.status, f"api:{ports.api}"]
    if ports.cdp is not None:
        parts.append(f"cdp:{ports.cdp}")
    if ports.no_vnc is not None:
        parts.append(f"novnc:{ports.no_vnc}")
    parts.append(instance.browser_mode)
    if instance.health is not None:
        parts.append("healthy" if instance.health.healthy else "unhealthy")
    if instance.error:
        parts.append(f"error:{instance.error}")
    return "  ".join(parts)


def _format_steps(steps: list[CleanupStep]) -> str:
    if not steps:
        return "Nothing to clean up"
    lines = []
    for s in steps:
        mark = "ok" if s.ok else "FAILED"
        line = f"  {s.step:6s} {s.target}  {mark}"
        if s.detail:
            line += f"  ({s.detail})"
        lines.append(line)
    return "\n".join(lines)


# ── Tools ────────────────────────────────────────────────────────────────


def build_server(app: BridgeApp) -> FastMCP:
    server = FastMCP(
        "sandbox-bridge",
        instructions=(
            "Ephemeral container sandboxes running a browser-automation agent. "
            "Use create_sandbox to start one and destroy_sandbox to remove it. "
            "Use activate_sandbox to create a sandbox and supervise its agent with heartbeats. "
            "Browser modes: 'headless' runs a browser inside the container, "
            "'host-bridged-cdp' and 'external-cdp' drive a browser on this machine "
            "started with launch_browser. "
            "Use runtime_info to diagnose a missing Docker or Podman."
        ),
        lifespan=app_lifespan(app),
    )

    @server.tool()
    async def runtime_info(refresh: bool = False) -> str:
        """
        Report which container runtime is available and how to fix it if none is.

        Args:
            refresh: Re-probe the runtime instead of using the cached result.

        Returns:
            Runtime kind, version, and the failure reason if unavailable.
        """
        if refresh:
            app.manager.detector.invalidate()
            await app.manager.initialize()
        else:
            await app.ensure_started()
        info = app.manager.runtime_info
        if info is None:
            return "Error: runtime detection did not run"
        return json.dumps(info.to_dict(), indent=2)

    @server.tool()
    async def cleanup_orphans() -> str:
        """
        Remove containers left over from a previous crashed session.

        Returns:
            One line per cleanup step.
        """
        await app.ensure_started()
        return _format_steps(await app.manager.cleanup_orphaned_instances())

    @server.tool()
    async def create_sandbox(
        browser_mode: str = "headless",
        name: str = "",
        memory: str = "",
        cpus: str = "",
        enable_vnc: bool = False,
        external_cdp_endpoint: str = "",
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """
        Start a new sandbox container.

        Args:
            browser_mode: "headless", "host-bridged-cdp" or "external-cdp"
            name: Container name; an existing container with this name is replaced
            memory: Memory limit (default from config, e.g. "2g")
            cpus: CPU limit (default from config)
            enable_vnc: Publish VNC and noVNC ports
            external_cdp_endpoint: CDP endpoint reachable from the container (non-headless modes)
            env: Extra environment variables for the container

        Returns:
            Instance id, container name and published ports, or an error.
        """
        await app.ensure_started()
        options = SandboxOptions(
            name=name or None,
            memory=memory or None,
            cpus=cpus or None,
            enable_vnc=enable_vnc,
            env=env or {},
            browser_mode=browser_mode,
            external_cdp_endpoint=external_cdp_endpoint or None,
        )
        try:
            instance = await app.manager.create(options)
        except SandboxError as e:
            return f"Error: {e.reason}"
        return f"Created {instance.id}\n{_format_instance(instance)}"

    @server.tool()
    async def activate_sandbox(browser_mode: str = "headless", enable_vnc: bool = False) -> str:
        """
        Create a sandbox, wait for its agent, and keep it under heartbeat supervision.
        Replaces any sandbox previously activated. In non-headless modes the
        browser started with launch_browser is handed to the container.

        Args:
            browser_mode: "headless", "host-bridged-cdp" or "external-cdp"
            enable_vnc: Publish VNC and noVNC ports

        Returns:
            Instance summary and agent API URL, or an error.
        """
        await app.ensure_started()
        options = SandboxOptions(browser_mode=browser_mode, enable_vnc=enable_vnc)
        try:
            active = await app.session.activate(options)
        except SandboxError as e:
            return f"Error: {e.reason}"
        return f"Active {_format_instance(active.instance)}\nAgent API: {active.client.api_url}"

    @server.tool()
    async def deactivate_sandbox() -> str:
        """
        Destroy the activated sandbox and stop supervising it.

        Returns:
            One line per cleanup step.
        """
        if not app.session.active:
            return "No active sandbox"
        return _format_steps(await app.session.deactivate())

    @server.tool()
    async def destroy_sandbox(instance_id: str) -> str:
        """
        Stop and remove a sandbox. Destroying an unknown id is a no-op.

        Args:
            instance_id: Id returned by create_sandbox (e.g. "sandbox-1").

        Returns:
            One line per cleanup step.
        """
        active = app.session.sandbox
        if active is not None and active.instance.id == instance_id:
            return _format_steps(await app.session.deactivate())
        return _format_steps(await app.manager.destroy(instance_id))

    @server.tool()
    async def list_sandboxes() -> str:
        """
        List all sandboxes owned by this server.

        Returns:
            One line per sandbox with status and ports.
        """
        instances = app.manager.list_instances()
        if not instances:
            return "No sandboxes. Use create_sandbox to start one."
        return "\n".join(_format_instance(i) for i in instances)

    @server.tool()
    async def sandbox_status(instance_id: str) -> str:
        """
        Check a sandbox against the container runtime and show its details.

        Args:
            instance_id: Sandbox id.

        Returns:
            JSON description of the instance.
        """
        try:
            instance = app.manager.get(instance_id)
        except SandboxError as e:
            return f"Error: {e.reason}"
        await app.manager.check_instance_health(instance)
        info = instance.to_dict()
        info["age"] = f"{time.time() - instance.created_at:.0f}s"
        return json.dumps(info, indent=2)

    @server.tool()
    async def sandbox_logs(instance_id: str, tail: int = 50) -> str:
        """
        Read the last lines of a sandbox container's output.

        Args:
            instance_id: Sandbox id.
            tail: Number of lines (default 50).

        Returns:
            Container log output.
        """
        try:
            output = await app.manager.logs(instance_id, tail=tail)
        except SandboxError as e:
            return f"Error: {e.reason}"
        return output or "(no output)"

    @server.tool()
    async def list_browsers() -> str:
        """
        List Chromium-based browsers installed on this machine.

        Returns:
            Browser id, name, version and executable path.
        """
        await app.ensure_started()
        browsers = app.bridge.browsers
        if not browsers:
            return "No supported browsers found"
        return "\n".join(
            f"{b.id:10s} {b.name:10s} {b.version or '-':16s} {b.executable_path}" for b in browsers
        )

    @server.tool()
    async def launch_browser(browser_id: str) -> str:
        """
        Start (or reuse) a host browser with remote debugging enabled.

        Args:
            browser_id: Id from list_browsers (e.g. "chrome").

        Returns:
            Host and container CDP endpoints, or an error.
        """
        await app.ensure_started()
        try:
            launch = await app.bridge.launch(browser_id)
        except SandboxError as e:
            return f"Error: {e.reason}"
        s = launch.session
        verb = "Reusing" if launch.reused else "Launched"
        return (
            f"{verb} {s.browser_name}\n"
            f"Host endpoint:      {s.cdp_endpoint}\n"
            f"Container endpoint: {s.cdp_endpoint_container}"
        )

    @server.tool()
    async def close_browser() -> str:
        """
        Close the browser started with launch_browser.

        Returns:
            Cleanup result.
        """
        if not app.bridge.has_active_session:
            return "No browser session"
        return _format_steps(await app.bridge.close())

    @server.tool()
    async def browser_status() -> str:
        """
        Show the external browser session, if any.

        Returns:
            JSON description of the session.
        """
        return json.dumps(app.bridge.status(), indent=2)

    @server.tool()
    async def cdp_endpoint() -> str:
        """
        WebSocket debugger URL of the host browser as reachable from a container.

        Returns:
            ws:// URL with the container host alias, or an error.
        """
        if not app.bridge.has_active_session:
            return "Error: no browser session. Use launch_browser first."
        try:
            return await app.bridge.container_ws_endpoint()
        except SandboxError as e:
            return f"Error: {e.reason}"

    return server


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    configure_logging()
    app = BridgeApp.from_config(BridgeConfig.from_env())
    install_emergency_handlers(lambda: app.manager.container_command, app.config.container_prefix)
    build_server(app).run(transport="stdio")


if __name__ == "__main__":
    main()
