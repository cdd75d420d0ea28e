"""Per-OS behaviour, selected once at startup via ``current_platform()``."""

import os
import re
import sys
from typing import Optional

CONTAINER_HOST_ALIAS = "host.docker.internal"


class HostPlatform:
    name = "generic"
    # Whether containers run inside a VM that may not be a Linux one.
    vm_backed = False

    def mount_path(self, host_path: str) -> str:
        return host_path

    def extra_run_args(self, browser_mode: str) -> list[str]:
        return []

    def remediation_hint(self) -> str:
        return "Install Docker Engine or Podman."

    def container_host_alias(self) -> str:
        return CONTAINER_HOST_ALIAS

    def browser_candidates(self, definition: dict) -> list[str]:
        """Absolute executable paths worth checking for a browser definition."""
        return []

    def browser_commands(self, definition: dict) -> list[str]:
        """Command names to resolve on PATH for a browser definition."""
        return []

    def probes_browser_version(self) -> bool:
        return True


class LinuxHost(HostPlatform):
    name = "linux"

    def extra_run_args(self, browser_mode: str) -> list[str]:
        # Docker Engine on Linux has no built-in host alias.
        if browser_mode != "headless":
            return ["--add-host", f"{CONTAINER_HOST_ALIAS}:host-gateway"]
        return []

    def browser_candidates(self, definition: dict) -> list[str]:
        return list(definition.get("linux", {}).get("paths", []))

    def browser_commands(self, definition: dict) -> list[str]:
        return list(definition.get("linux", {}).get("commands", []))


class MacHost(HostPlatform):
    name = "darwin"
    vm_backed = True

    def remediation_hint(self) -> str:
        return (
            "Install Docker Desktop (https://docker.com/products/docker-desktop) "
            "or Podman Desktop (https://podman-desktop.io)."
        )

    def browser_candidates(self, definition: dict) -> list[str]:
        mac = definition.get("darwin", {})
        roots = ["/Applications", os.path.join(os.path.expanduser("~"), "Applications")]
        return [
            os.path.join(root, bundle, mac.get("executable", ""))
            for root in roots
            for bundle in mac.get("bundles", [])
        ]


_DRIVE_RE = re.compile(r"^([A-Za-z]):\\")
_WIN_VAR_RE = re.compile(r"%([^%]+)%")


class WindowsHost(HostPlatform):
    name = "win32"
    vm_backed = True

    def mount_path(self, host_path: str) -> str:
        # C:\Users\x -> /c/Users/x for Docker Desktop volume mounts
        path = _DRIVE_RE.sub(lambda m: f"/{m.group(1).lower()}/", host_path)
        return path.replace("\\", "/")

    def remediation_hint(self) -> str:
        return "Install Docker Desktop with WSL2 backend or Podman Desktop."

    def expand_path(self, template: str) -> str:
        return _WIN_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), template)

    def browser_candidates(self, definition: dict) -> list[str]:
        return [
            self.expand_path(p) for p in definition.get("win32", {}).get("paths", [])
        ]

    def probes_browser_version(self) -> bool:
        return False


def current_platform(platform: Optional[str] = None) -> HostPlatform:
    platform = platform or sys.platform
    if platform == "darwin":
        return MacHost()
    if platform == "win32":
        return WindowsHost()
    return LinuxHost()
