"""Container runtime detection (Docker first, then Podman)."""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from sandbox_bridge.platforms import HostPlatform, current_platform

log = logging.getLogger(__name__)

ENGINES = ("docker", "podman")
PROBE_TIMEOUT = 10.0

_VERSION_RE = re.compile(r"version\s+([\d.]+)", re.IGNORECASE)


async def _run(
    cmd: list[str], timeout: float = 30.0, input_data: Optional[bytes] = None
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=input_data), timeout=timeout
        )
    except asyncio.TimeoutError:
        if proc.returncode is None:
            proc.kill()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def _probe(cmd: list[str], timeout: float = PROBE_TIMEOUT) -> tuple[bool, str, str]:
    """Run a detection command; a missing binary or timeout is a failed probe."""
    try:
        code, stdout, stderr = await _run(cmd, timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        return False, "", str(e) or type(e).__name__
    return code == 0, stdout.strip(), stderr.strip()


def parse_version(output: str) -> Optional[str]:
    """``Docker version 24.0.7, build afdd53b`` -> ``24.0.7``."""
    m = _VERSION_RE.search(output or "")
    return m.group(1) if m else None


@dataclass
class RuntimeDetails:
    server_version: Optional[str] = None
    container_os: Optional[str] = None
    container_arch: Optional[str] = None


@dataclass
class RuntimeInfo:
    available: bool
    engine_kind: Optional[str] = None
    version: Optional[str] = None
    vm_backing_present: bool = False
    reason: Optional[str] = None
    details: RuntimeDetails = field(default_factory=RuntimeDetails)

    def to_dict(self) -> dict:
        return {
            "available": self.available,
            "engine": self.engine_kind,
            "version": self.version,
            "vm_backing_present": self.vm_backing_present,
            "reason": self.reason,
            "server_version": self.details.server_version,
            "container_os": self.details.container_os,
            "container_arch": self.details.container_arch,
        }


class RuntimeDetector:
    def __init__(self, platform: Optional[HostPlatform] = None):
        self.platform = platform or current_platform()
        self._cached: Optional[RuntimeInfo] = None
        self._lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[RuntimeInfo]:
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    async def detect_cached(self, preferred: Optional[str] = None) -> RuntimeInfo:
        async with self._lock:
            if self._cached is None:
                self._cached = await self.detect(preferred)
            return self._cached

    async def detect(self, preferred: Optional[str] = None) -> RuntimeInfo:
        order = list(ENGINES)
        if preferred in ENGINES:
            order.remove(preferred)
            order.insert(0, preferred)

        results: dict[str, RuntimeInfo] = {}
        for engine in order:
            info = await self.check_engine(engine)
            if info.available:
                log.info(f"Found {engine} {info.version}")
                return info
            results[engine] = info

        reason = (
            "No container runtime available. "
            f"Docker: {results['docker'].reason} "
            f"Podman: {results['podman'].reason} "
            f"{self.platform.remediation_hint()}"
        )
        log.warning(reason)
        return RuntimeInfo(available=False, reason=reason)

    async def check_engine(self, engine: str) -> RuntimeInfo:
        if engine == "podman":
            return await self._check_podman()
        return await self._check_docker()

    async def _check_docker(self) -> RuntimeInfo:
        ok, stdout, _ = await _probe(["docker", "--version"])
        if not ok:
            return RuntimeInfo(
                available=False,
                reason="Docker CLI not found. Install Docker Desktop or Docker Engine.",
            )
        version = parse_version(stdout)

        ok, stdout, stderr = await _probe(["docker", "info", "--format", "{{json .}}"])
        if not ok:
            if "permission denied" in stderr.lower():
                reason = (
                    "Permission denied accessing Docker. "
                    "You may need to add your user to the docker group."
                )
            elif "cannot connect" in stderr.lower():
                reason = (
                    "Cannot connect to Docker daemon. "
                    "Is Docker Desktop or Docker Engine running?"
                )
            else:
                reason = "Docker daemon is not running."
            return RuntimeInfo(
                available=False, engine_kind="docker", version=version, reason=reason
            )

        details = RuntimeDetails()
        try:
            info = json.loads(stdout)
            details = RuntimeDetails(
                server_version=info.get("ServerVersion"),
                container_os=info.get("OSType"),
                container_arch=info.get("Architecture"),
            )
        except (json.JSONDecodeError, AttributeError):
            log.debug("docker info output was not JSON; continuing without details")

        if self.platform.vm_backed and details.container_os and details.container_os != "linux":
            return RuntimeInfo(
                available=False,
                engine_kind="docker",
                version=version,
                reason=(
                    f"Docker is configured for {details.container_os} containers. "
                    "Linux containers are required."
                ),
                details=details,
            )

        return RuntimeInfo(
            available=True,
            engine_kind="docker",
            version=version,
            vm_backing_present=True,
            details=details,
        )

    async def _check_podman(self) -> RuntimeInfo:
        ok, stdout, _ = await _probe(["podman", "--version"])
        if not ok:
            return RuntimeInfo(
                available=False,
                reason="Podman CLI not found. Install Podman or Podman Desktop.",
            )
        version = parse_version(stdout)

        if self.platform.vm_backed:
            reason = await self._podman_machine_problem()
            if reason:
                return RuntimeInfo(
                    available=False, engine_kind="podman", version=version, reason=reason
                )

        ok, stdout, _ = await _probe(["podman", "info", "--format", "{{json .}}"])
        if not ok:
            return RuntimeInfo(
                available=False,
                engine_kind="podman",
                version=version,
                reason="Cannot get Podman info. The Podman service may not be running.",
            )

        details = RuntimeDetails()
        try:
            info = json.loads(stdout)
            details = RuntimeDetails(
                server_version=(info.get("version") or {}).get("Version"),
                container_os=(info.get("host") or {}).get("os"),
                container_arch=(info.get("host") or {}).get("arch"),
            )
        except (json.JSONDecodeError, AttributeError):
            log.debug("podman info output was not JSON; continuing without details")

        if self.platform.vm_backed and details.container_os and details.container_os != "linux":
            return RuntimeInfo(
                available=False,
                engine_kind="podman",
                version=version,
                reason=(
                    f"Podman reports {details.container_os} containers. "
                    "Linux containers are required."
                ),
                details=details,
            )

        return RuntimeInfo(
            available=True,
            engine_kind="podman",
            version=version,
            vm_backing_present=True,
            details=details,
        )

    async def _podman_machine_problem(self) -> Optional[str]:
        ok, stdout, _ = await _probe(["podman", "machine", "list", "--format", "json"])
        if not ok:
            return "Cannot list Podman machines. Podman may not be properly installed."
        try:
            machines = json.loads(stdout or "[]")
        except json.JSONDecodeError:
            # Fall through to `podman info`, which gives the final verdict.
            return None
        if not machines:
            return (
                "No Podman machine found. "
                "Run `podman machine init` and `podman machine start`."
            )
        running = any(
            m.get("Running") or m.get("LastUp") == "Currently running"
            for m in machines
            if isinstance(m, dict)
        )
        if not running:
            return "Podman machine is not running. Run `podman machine start`."
        return None

    async def is_any_runtime_available(self) -> bool:
        """Fast check: ``info`` only runs once ``--version`` has succeeded."""
        for engine in ENGINES:
            ok, _, _ = await _probe([engine, "--version"])
            if not ok:
                continue
            ok, _, _ = await _probe([engine, "info"])
            if ok:
                return True
        return False
