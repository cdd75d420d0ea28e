"""Sandbox container lifecycle: create, supervise, destroy."""

import asyncio
import copy
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Literal, Optional

from sandbox_bridge.config import BridgeConfig
from sandbox_bridge.errors import (
    InstanceNotFound,
    InvalidSandboxConfig,
    LaunchCrashed,
    RuntimeUnavailable,
    SandboxCreateError,
    SandboxError,
)
from sandbox_bridge.events import (
    EventBus,
    InstanceCreated,
    InstanceErrored,
    InstanceStarted,
    InstanceStopped,
    RuntimeDetected,
)
from sandbox_bridge.events import RuntimeUnavailable as RuntimeUnavailableEvent
from sandbox_bridge.heartbeat import HeartbeatMonitor
from sandbox_bridge.platforms import HostPlatform, current_platform
from sandbox_bridge.ports import PortAllocator, PortSet
from sandbox_bridge.runtime import RuntimeDetector, RuntimeInfo, _run

log = logging.getLogger(__name__)

BrowserMode = Literal["headless", "host-bridged-cdp", "external-cdp"]
BROWSER_MODES = ("headless", "host-bridged-cdp", "external-cdp")

SandboxStatus = Literal["creating", "starting", "running", "stopping", "stopped", "error"]

# Ports the in-sandbox agent image listens on.
CONTAINER_API_PORT = 3000
CONTAINER_CDP_PORT = 9222
CONTAINER_VNC_PORT = 5900
CONTAINER_NOVNC_PORT = 6080

CONTAINER_CREDENTIAL_PATH = "/home/sandbox/.codex/auth.json"

STOP_GRACE = 5
STOP_CALL_TIMEOUT = 15.0
RM_CALL_TIMEOUT = 10.0

_MISSING_MARKERS = ("no such container", "no such object")


# ── Data model ───────────────────────────────────────────────────────────


@dataclass
class HealthInfo:
    last_check: float
    healthy: bool


@dataclass
class SandboxOptions:
    name: Optional[str] = None
    memory: Optional[str] = None
    cpus: Optional[str] = None
    enable_vnc: Optional[bool] = None
    env: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    browser_mode: BrowserMode = "headless"
    external_cdp_endpoint: Optional[str] = None
    mount_credentials: Optional[bool] = None
    credential_dir: Optional[str] = None


@dataclass
class SandboxInstance:
    id: str
    container_name: str
    ports: PortSet
    browser_mode: BrowserMode = "headless"
    external_cdp_endpoint: Optional[str] = None
    container_handle: str = ""
    status: SandboxStatus = "creating"
    health: Optional[HealthInfo] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def snapshot(self) -> "SandboxInstance":
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "container": self.container_name,
            "handle": self.container_handle[:12],
            "status": self.status,
            "browser_mode": self.browser_mode,
            "external_cdp_endpoint": self.external_cdp_endpoint,
            "ports": self.ports.to_dict(),
            "healthy": self.health.healthy if self.health else None,
            "error": self.error,
            "created_at": self.created_at,
        }


@dataclass
class CleanupStep:
    step: str
    target: str
    ok: bool
    detail: str = ""


def _is_missing(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _MISSING_MARKERS)


# ── Manager ──────────────────────────────────────────────────────────────


class SandboxManager:
    """Owns sandbox containers for one interactive session.

    Every instance's ports stay reserved in the allocator for exactly the
    lifetime of its registry entry.
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        events: Optional[EventBus] = None,
        detector: Optional[RuntimeDetector] = None,
        allocator: Optional[PortAllocator] = None,
        heartbeat: Optional[HeartbeatMonitor] = None,
        platform: Optional[HostPlatform] = None,
    ):
        self.config = config or BridgeConfig()
        self.events = events or EventBus()
        self.platform = platform or current_platform()
        self.detector = detector or RuntimeDetector(self.platform)
        self.allocator = allocator or PortAllocator(
            self.config.port_range_start, self.config.port_range_end
        )
        self.heartbeat = heartbeat or HeartbeatMonitor(
            interval=self.config.heartbeat_interval,
            threshold=self.config.heartbeat_threshold,
            events=self.events,
        )
        self._instances: dict[str, SandboxInstance] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._runtime_info: Optional[RuntimeInfo] = None
        self._command: Optional[str] = None
        self._health_task: Optional[asyncio.Task] = None
        self._next_id = 1

    # ── Runtime ──────────────────────────────────────────────────────

    @property
    def runtime_info(self) -> Optional[RuntimeInfo]:
        return self._runtime_info

    @property
    def container_command(self) -> Optional[str]:
        return self._command

    async def initialize(self) -> bool:
        log.info("Initializing sandbox manager...")
        info = await self.detector.detect_cached(self.config.preferred_engine)
        self._runtime_info = info
        if info.available and info.engine_kind:
            self._command = info.engine_kind
            self.events.publish(RuntimeDetected(runtime=info))
            log.info(f"Using {info.engine_kind} {info.version}")
            self._start_health_checks()
            return True
        self.events.publish(RuntimeUnavailableEvent(reason=info.reason or "Unknown error"))
        log.warning(f"No container runtime available: {info.reason}")
        return False

    async def is_available(self) -> bool:
        if self._runtime_info is None:
            await self.initialize()
        return bool(self._runtime_info and self._runtime_info.available)

    def _require_command(self) -> str:
        if not self._command:
            reason = "Sandbox manager not initialized or no container runtime available."
            if self._runtime_info and self._runtime_info.reason:
                reason = self._runtime_info.reason
            raise RuntimeUnavailable(reason, self._runtime_info)
        return self._command

    # ── Registry ─────────────────────────────────────────────────────

    def find(self, instance_id: str) -> Optional[SandboxInstance]:
        return self._instances.get(instance_id)

    def get(self, instance_id: str) -> SandboxInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def find_by_name(self, container_name: str) -> Optional[SandboxInstance]:
        for instance in self._instances.values():
            if instance.container_name == container_name:
                return instance
        return None

    def list_instances(self) -> list[SandboxInstance]:
        return list(self._instances.values())

    @property
    def instance_count(self) -> int:
        return len(self._instances)

    def _lock_for(self, instance_id: str) -> asyncio.Lock:
        lock = self._locks.get(instance_id)
        if lock is None:
            lock = self._locks[instance_id] = asyncio.Lock()
        return lock

    # ── Orphans ──────────────────────────────────────────────────────

    async def cleanup_orphaned_instances(self) -> list[CleanupStep]:
        """Force-remove every container carrying our prefix, running or not."""
        if not self._command:
            return []
        prefix = self.config.container_prefix
        try:
            code, stdout, stderr = await _run(
                [self._command, "ps", "-a", "-q", "--filter", f"name={prefix}"],
                timeout=self.config.inspect_timeout * 2,
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Orphan cleanup: could not list containers: {e}")
            return [CleanupStep("list", prefix, False, str(e))]
        if code != 0:
            log.warning(f"Orphan cleanup: could not list containers: {stderr.strip()}")
            return [CleanupStep("list", prefix, False, stderr.strip())]

        ids = [line.strip() for line in stdout.splitlines() if line.strip()]
        steps = [CleanupStep("list", prefix, True, f"{len(ids)} found")]
        if not ids:
            log.info("Orphan cleanup: no orphaned containers found")
            return steps

        log.info(f"Orphan cleanup: removing {len(ids)} container(s)")
        try:
            code, _, stderr = await _run(
                [self._command, "rm", "-f", *ids], timeout=RM_CALL_TIMEOUT * 3
            )
            ok, detail = code == 0, stderr.strip()
        except (OSError, asyncio.TimeoutError) as e:
            ok, detail = False, str(e)
        if not ok:
            log.warning(f"Orphan cleanup: rm failed: {detail}")
        steps.extend(CleanupStep("rm", cid, ok, detail) for cid in ids)
        return steps

    # ── Create ───────────────────────────────────────────────────────

    def _validate(self, options: SandboxOptions) -> None:
        if options.browser_mode not in BROWSER_MODES:
            raise InvalidSandboxConfig(f"Unknown browser mode: {options.browser_mode!r}")
        if options.browser_mode != "headless" and not options.external_cdp_endpoint:
            raise InvalidSandboxConfig(
                f"external_cdp_endpoint is required for browser mode '{options.browser_mode}'"
            )

    async def create(self, options: Optional[SandboxOptions] = None) -> SandboxInstance:
        options = options or SandboxOptions()
        command = self._require_command()
        replaced = self.find_by_name(options.name) if options.name else None
        if len(self._instances) - (replaced is not None) >= self.config.max_instances:
            raise SandboxError(
                f"Maximum number of instances ({self.config.max_instances}) reached"
            )
        self._validate(options)

        instance_id = f"sandbox-{self._next_id}"
        self._next_id += 1
        container_name = (
            options.name
            or f"{self.config.container_prefix}{instance_id}-{int(time.time() * 1000)}"
        )

        async with self._lock_for(instance_id):
            await self._evict_same_name(command, container_name)

            enable_vnc = (
                self.config.enable_vnc if options.enable_vnc is None else options.enable_vnc
            )
            headless = options.browser_mode == "headless"
            ports = await self.allocator.reserve(cdp=headless, vnc=enable_vnc)

            instance = SandboxInstance(
                id=instance_id,
                container_name=container_name,
                ports=ports,
                browser_mode=options.browser_mode,
                external_cdp_endpoint=options.external_cdp_endpoint,
            )
            self._instances[instance_id] = instance
            self.events.publish(InstanceCreated(instance=instance.snapshot()))

            try:
                args = self.build_run_args(instance, options)
                instance.status = "starting"
                log.info(f"Creating container: {command} {' '.join(args)}")
                code, stdout, stderr = await _run(
                    [command, *args], timeout=self.config.launch_timeout
                )
                if code != 0:
                    raise LaunchCrashed(
                        f"Container failed to start: {stderr.strip() or f'exit code {code}'}"
                    )
                instance.container_handle = stdout.strip()
                log.info(f"Container started: {instance.container_handle[:12]}")

                await self._confirm_running(command, instance)

                instance.status = "running"
                instance.health = HealthInfo(last_check=time.time(), healthy=True)
                self.events.publish(InstanceStarted(instance=instance.snapshot()))
                return instance
            except BaseException as e:
                message = getattr(e, "reason", None) or str(e) or type(e).__name__
                instance.status = "error"
                instance.error = message
                snapshot = instance.snapshot()
                self.events.publish(InstanceErrored(instance=snapshot, error=message))
                self.allocator.release_all(instance.ports)
                self._instances.pop(instance_id, None)
                log.error(f"Failed to create {container_name}: {message}")
                if isinstance(e, SandboxError):
                    e.instance = snapshot
                    raise
                if not isinstance(e, Exception):
                    raise
                raise SandboxCreateError(message, instance=snapshot) from e

    async def _evict_same_name(self, command: str, container_name: str) -> None:
        """Make creation idempotent under a reused name."""
        stale = self.find_by_name(container_name)
        if stale is not None:
            log.info(f"Replacing existing instance {stale.id} named {container_name}")
            await self.destroy(stale.id)
        try:
            code, _, _ = await _run(
                [command, "rm", "-f", container_name], timeout=RM_CALL_TIMEOUT
            )
            if code == 0:
                log.info(f"Cleaned up existing container: {container_name}")
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not pre-clean {container_name}: {e}")

    async def _confirm_running(self, command: str, instance: SandboxInstance) -> None:
        """Second phase of the launch check.

        Some runtimes return from ``run`` before the entrypoint executes, so
        the container is inspected again after a settle delay.
        """
        await asyncio.sleep(self.config.settle_delay)
        code, stdout, stderr = await _run(
            [command, "inspect", "--format", "{{.State.Running}}", instance.container_name],
            timeout=self.config.inspect_timeout,
        )
        if code != 0 and _is_missing(stderr + stdout):
            log.error("Container exited and was removed before it could be inspected")
            raise LaunchCrashed(
                "Container exited immediately. The image may have startup issues.",
                logs=await self._crash_logs(command, instance),
            )
        if code != 0:
            raise SandboxError(f"Could not inspect container: {stderr.strip()}")
        if stdout.strip() != "true":
            log.error("Container crashed immediately after start")
            logs = await self._crash_logs(command, instance)
            reason = "Container crashed immediately after starting."
            if logs:
                reason += f" Last output:\n{logs}"
            raise LaunchCrashed(reason, logs=logs)

    async def _crash_logs(self, command: str, instance: SandboxInstance) -> str:
        try:
            code, stdout, stderr = await _run(
                [command, "logs", "--tail", str(self.config.crash_log_tail), instance.container_name],
                timeout=self.config.inspect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"Could not retrieve crash logs: {e}")
            return ""
        if code != 0:
            log.warning(f"Could not retrieve crash logs: {stderr.strip()}")
            return ""
        logs = (stdout or stderr).strip()
        log.error(f"Container crash logs:\n{logs or '(no logs available)'}")
        return logs

    def build_run_args(self, instance: SandboxInstance, options: SandboxOptions) -> list[str]:
        cfg = self.config
        mode = instance.browser_mode
        args = [
            "run",
            "-d",
            "--rm",
            "--stop-timeout",
            str(cfg.stop_timeout),
            "--name",
            instance.container_name,
            "--memory",
            options.memory or cfg.memory,
            "--cpus",
            str(options.cpus or cfg.cpus),
        ]
        args.extend(self.platform.extra_run_args(mode))

        ports = instance.ports
        args.extend(["-p", f"127.0.0.1:{ports.api}:{CONTAINER_API_PORT}"])
        if mode == "headless" and ports.cdp is not None:
            args.extend(["-p", f"127.0.0.1:{ports.cdp}:{CONTAINER_CDP_PORT}"])
        if ports.vnc is not None and ports.no_vnc is not None:
            args.extend(["-p", f"127.0.0.1:{ports.vnc}:{CONTAINER_VNC_PORT}"])
            args.extend(["-p", f"127.0.0.1:{ports.no_vnc}:{CONTAINER_NOVNC_PORT}"])
            args.extend(["-e", "VNC_ENABLED=true"])

        args.extend(["-e", f"BROWSER_MODE={mode}"])
        args.extend(["-e", f"API_PORT={CONTAINER_API_PORT}"])
        if mode == "headless":
            args.extend(["-e", f"CDP_PORT={CONTAINER_CDP_PORT}"])
            args.extend(["-e", "START_BROWSER=true"])
        else:
            args.extend(["-e", f"EXTERNAL_CDP_ENDPOINT={instance.external_cdp_endpoint}"])
            args.extend(["-e", "START_BROWSER=false"])

        mount = cfg.mount_credentials if options.mount_credentials is None else options.mount_credentials
        if mount:
            cred_dir = options.credential_dir or cfg.credential_dir
            cred_file = os.path.join(cred_dir, cfg.credential_file)
            # Only the single credential file, never the whole directory.
            if os.path.isfile(cred_file):
                host_path = self.platform.mount_path(cred_file)
                args.extend(["-v", f"{host_path}:{CONTAINER_CREDENTIAL_PATH}:ro"])
                log.info(f"Mounting credential file {cred_file} -> {host_path}")
            else:
                log.info(f"No credential file at {cred_file}, skipping mount")

        for key, value in {**cfg.extra_env, **options.env}.items():
            args.extend(["-e", f"{key}={value}"])
        for volume in options.volumes:
            args.extend(["-v", volume])

        # Playwright's Chromium needs syscalls the default profile blocks.
        args.extend(["--security-opt", "seccomp=unconfined"])
        args.append(cfg.image)
        return args

    # ── Destroy ──────────────────────────────────────────────────────

    async def destroy(self, instance_id: str) -> list[CleanupStep]:
        """Stop and remove an instance. Unknown ids are a no-op."""
        if instance_id not in self._instances:
            return []
        async with self._lock_for(instance_id):
            instance = self._instances.get(instance_id)
            if instance is None:
                return []
            return await self._destroy_locked(instance)

    async def _destroy_locked(self, instance: SandboxInstance) -> list[CleanupStep]:
        log.info(f"Destroying instance: {instance.id}")
        self.heartbeat.unwatch(instance.id)
        instance.status = "stopping"
        steps: list[CleanupStep] = []
        try:
            command = self._command
            if command:
                steps.append(
                    await self._cleanup_call(
                        "stop",
                        instance.container_name,
                        [command, "stop", "-t", str(STOP_GRACE), instance.container_name],
                        STOP_CALL_TIMEOUT,
                    )
                )
                steps.append(
                    await self._cleanup_call(
                        "rm",
                        instance.container_name,
                        [command, "rm", "-f", instance.container_name],
                        RM_CALL_TIMEOUT,
                    )
                )
            instance.status = "stopped"
            self.events.publish(InstanceStopped(instance=instance.snapshot()))
        finally:
            self.allocator.release_all(instance.ports)
            self._instances.pop(instance.id, None)
            self._locks.pop(instance.id, None)
        return steps

    async def _cleanup_call(
        self, step: str, target: str, cmd: list[str], timeout: float
    ) -> CleanupStep:
        try:
            code, _, stderr = await _run(cmd, timeout=timeout)
        except (OSError, asyncio.TimeoutError) as e:
            log.warning(f"{step} {target} failed: {e}")
            return CleanupStep(step, target, False, str(e) or type(e).__name__)
        if code != 0:
            log.debug(f"{step} {target} exited {code}: {stderr.strip()}")
            return CleanupStep(step, target, False, stderr.strip())
        return CleanupStep(step, target, True)

    # ── Health checks ────────────────────────────────────────────────

    async def check_instance_health(self, instance: SandboxInstance) -> bool:
        """Authoritative liveness from the runtime itself."""
        if not self._command or instance.status != "running":
            return False
        try:
            code, stdout, stderr = await _run(
                [self._command, "inspect", "--format", "{{.State.Running}}", instance.container_name],
                timeout=self.config.inspect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            log.debug(f"Health check for {instance.id} failed: {e}")
            instance.health = HealthInfo(last_check=time.time(), healthy=False)
            return False

        running = code == 0 and stdout.strip() == "true"
        instance.health = HealthInfo(last_check=time.time(), healthy=running)
        if code != 0 and not _is_missing(stderr + stdout):
            log.debug(f"Health check for {instance.id} could not inspect: {stderr.strip()}")
            return False
        if not running and instance.status == "running":
            log.warning(f"Container for {instance.id} is no longer running")
            instance.status = "stopped"
            self.events.publish(InstanceStopped(instance=instance.snapshot()))
        return running

    def _start_health_checks(self) -> None:
        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self):
        while True:
            try:
                await asyncio.sleep(self.config.health_check_interval)
                for instance in list(self._instances.values()):
                    if instance.status == "running":
                        await self.check_instance_health(instance)
            except asyncio.CancelledError:
                return
            except Exception as e:
                log.warning(f"Health check loop error: {e}")

    async def _stop_health_checks(self) -> None:
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    # ── Logs / images ────────────────────────────────────────────────

    async def logs(self, instance_id: str, tail: int = 50) -> str:
        instance = self.get(instance_id)
        command = self._require_command()
        code, stdout, stderr = await _run(
            [command, "logs", "--tail", str(tail), instance.container_name],
            timeout=self.config.inspect_timeout,
        )
        if code != 0:
            raise SandboxError(f"Could not read logs for {instance_id}: {stderr.strip()}")
        return stdout or stderr

    async def is_image_available(self) -> bool:
        if not self._command:
            return False
        try:
            code, _, _ = await _run(
                [self._command, "image", "inspect", self.config.image], timeout=10
            )
        except (OSError, asyncio.TimeoutError):
            return False
        return code == 0

    async def pull_image(self) -> None:
        command = self._require_command()
        log.info(f"Pulling image: {self.config.image}")
        code, _, stderr = await _run(
            [command, "pull", self.config.image], timeout=self.config.pull_timeout
        )
        if code != 0:
            raise SandboxError(f"Pull failed: {stderr.strip()}")
        log.info("Image pulled successfully")

    async def build_image(self, dockerfile: str, context: str = ".") -> None:
        command = self._require_command()
        log.info(f"Building image: {self.config.image}")
        code, _, stderr = await _run(
            [command, "build", "-t", self.config.image, "-f", dockerfile, context],
            timeout=self.config.build_timeout,
        )
        if code != 0:
            raise SandboxError(f"Build failed: {stderr.strip()}")
        log.info("Image built successfully")

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self) -> list[CleanupStep]:
        log.info("Shutting down sandbox manager...")
        await self._stop_health_checks()
        await self.heartbeat.stop()

        ids = list(self._instances.keys())
        results = await asyncio.gather(
            *(self.destroy(instance_id) for instance_id in ids), return_exceptions=True
        )
        steps: list[CleanupStep] = []
        for instance_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                log.error(f"Error destroying {instance_id}: {result}")
                steps.append(CleanupStep("destroy", instance_id, False, str(result)))
            else:
                steps.extend(result)
        log.info("Shutdown complete")
        return steps
