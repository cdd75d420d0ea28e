"""Caller-side sandbox state for one interactive session.

Ties a sandbox instance to the API client talking to its agent, keeps the
heartbeat watch on it, and drops the association when the agent goes away
so the caller falls back to running on the host.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from sandbox_bridge.api_client import SandboxAPIClient
from sandbox_bridge.cdp import CdpBridge
from sandbox_bridge.config import BridgeConfig
from sandbox_bridge.errors import CdpConnectFailed, LaunchCrashed, SandboxAPIError, SandboxError
from sandbox_bridge.manager import CleanupStep, SandboxInstance, SandboxManager, SandboxOptions
from sandbox_bridge.ports import PortSet

log = logging.getLogger(__name__)

ClientFactory = Callable[[PortSet], SandboxAPIClient]


def _default_client(ports: PortSet) -> SandboxAPIClient:
    return SandboxAPIClient(ports.api, ports.cdp)


@dataclass
class ActiveSandbox:
    instance: SandboxInstance
    client: SandboxAPIClient


class SandboxSession:
    def __init__(
        self,
        manager: SandboxManager,
        bridge: Optional[CdpBridge] = None,
        config: Optional[BridgeConfig] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.manager = manager
        self.bridge = bridge
        self.config = config or manager.config
        self.client_factory = client_factory or _default_client
        self.sandbox: Optional[ActiveSandbox] = None
        self.use_sandbox = False

    @property
    def active(self) -> bool:
        return self.sandbox is not None

    async def _resolve_endpoint(self, options: SandboxOptions) -> SandboxOptions:
        if options.browser_mode == "headless" or options.external_cdp_endpoint:
            return options
        if self.bridge is None or not self.bridge.has_active_session:
            raise CdpConnectFailed(
                f"Browser mode '{options.browser_mode}' needs a running external browser. "
                "Launch one first."
            )
        endpoint = await self.bridge.container_ws_endpoint()
        log.info(f"Using container CDP endpoint {endpoint}")
        return dataclasses.replace(options, external_cdp_endpoint=endpoint)

    async def activate(self, options: Optional[SandboxOptions] = None) -> ActiveSandbox:
        if self.sandbox is not None:
            await self.deactivate()

        options = await self._resolve_endpoint(options or SandboxOptions())
        instance = await self.manager.create(options)
        client = self.client_factory(instance.ports)

        log.info(f"Waiting for agent in {instance.id} at {client.api_url}")
        healthy = await client.wait_for_healthy(
            max_attempts=self.config.agent_health_attempts,
            interval=self.config.agent_health_interval,
        )
        if not healthy:
            logs = ""
            try:
                logs = await self.manager.logs(instance.id, tail=self.config.crash_log_tail)
            except SandboxError as e:
                log.warning(f"Could not fetch logs for {instance.id}: {e}")
            await client.aclose()
            await self.manager.destroy(instance.id)
            reason = "Sandbox agent failed to become healthy."
            if logs:
                reason += f" Last output:\n{logs}"
            raise LaunchCrashed(reason, logs=logs)

        try:
            if not await client.heartbeat():
                log.warning(f"Initial heartbeat to {instance.id} was not acknowledged")
        except (httpx.HTTPError, SandboxAPIError) as e:
            log.warning(f"Initial heartbeat to {instance.id} failed: {e}")

        self.sandbox = ActiveSandbox(instance=instance, client=client)
        self.use_sandbox = True
        self.manager.heartbeat.watch(instance.id, client.heartbeat, on_lost=self._on_lost)
        log.info(f"Sandbox {instance.id} active")
        return self.sandbox

    async def _on_lost(self, instance_id: str, reason: str) -> None:
        active = self.sandbox
        if active is None or active.instance.id != instance_id:
            return
        log.warning(f"Falling back to host mode: {reason}")
        self.sandbox = None
        self.use_sandbox = False
        await active.client.aclose()
        await self.manager.destroy(instance_id)

    async def deactivate(self) -> list[CleanupStep]:
        active, self.sandbox = self.sandbox, None
        self.use_sandbox = False
        if active is None:
            return []
        self.manager.heartbeat.unwatch(active.instance.id)
        await active.client.aclose()
        return await self.manager.destroy(active.instance.id)
