"""Detection of installed Chromium-based browsers that speak CDP."""

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from typing import Optional

from sandbox_bridge.platforms import HostPlatform, current_platform
from sandbox_bridge.runtime import _run

log = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")

BROWSER_DEFINITIONS: list[dict] = [
    {
        "id": "chrome",
        "name": "Chrome",
        "win32": {
            "paths": [
                r"%ProgramFiles%\Google\Chrome\Application\chrome.exe",
                r"%ProgramFiles(x86)%\Google\Chrome\Application\chrome.exe",
                r"%LocalAppData%\Google\Chrome\Application\chrome.exe",
            ]
        },
        "darwin": {"bundles": ["Google Chrome.app"], "executable": "Contents/MacOS/Google Chrome"},
        "linux": {
            "commands": ["google-chrome", "google-chrome-stable", "chrome"],
            "paths": ["/usr/bin/google-chrome", "/usr/bin/google-chrome-stable", "/opt/google/chrome/chrome"],
        },
    },
    {
        "id": "edge",
        "name": "Edge",
        "win32": {
            "paths": [
                r"%ProgramFiles%\Microsoft\Edge\Application\msedge.exe",
                r"%ProgramFiles(x86)%\Microsoft\Edge\Application\msedge.exe",
            ]
        },
        "darwin": {"bundles": ["Microsoft Edge.app"], "executable": "Contents/MacOS/Microsoft Edge"},
        "linux": {
            "commands": ["microsoft-edge", "microsoft-edge-stable"],
            "paths": ["/usr/bin/microsoft-edge", "/usr/bin/microsoft-edge-stable", "/opt/microsoft/msedge/msedge"],
        },
    },
    {
        "id": "brave",
        "name": "Brave",
        "win32": {
            "paths": [
                r"%ProgramFiles%\BraveSoftware\Brave-Browser\Application\brave.exe",
                r"%LocalAppData%\BraveSoftware\Brave-Browser\Application\brave.exe",
            ]
        },
        "darwin": {"bundles": ["Brave Browser.app"], "executable": "Contents/MacOS/Brave Browser"},
        "linux": {
            "commands": ["brave", "brave-browser"],
            "paths": ["/usr/bin/brave", "/usr/bin/brave-browser", "/opt/brave.com/brave/brave"],
        },
    },
    {
        "id": "chromium",
        "name": "Chromium",
        "win32": {"paths": [r"%LocalAppData%\Chromium\Application\chrome.exe"]},
        "darwin": {"bundles": ["Chromium.app"], "executable": "Contents/MacOS/Chromium"},
        "linux": {
            "commands": ["chromium", "chromium-browser"],
            "paths": ["/usr/bin/chromium", "/usr/bin/chromium-browser", "/snap/bin/chromium"],
        },
    },
    {
        "id": "vivaldi",
        "name": "Vivaldi",
        "win32": {
            "paths": [
                r"%LocalAppData%\Vivaldi\Application\vivaldi.exe",
                r"%ProgramFiles%\Vivaldi\Application\vivaldi.exe",
            ]
        },
        "darwin": {"bundles": ["Vivaldi.app"], "executable": "Contents/MacOS/Vivaldi"},
        "linux": {
            "commands": ["vivaldi", "vivaldi-stable"],
            "paths": ["/usr/bin/vivaldi", "/usr/bin/vivaldi-stable", "/opt/vivaldi/vivaldi"],
        },
    },
    {
        "id": "opera",
        "name": "Opera",
        "win32": {
            "paths": [
                r"%LocalAppData%\Programs\Opera\launcher.exe",
                r"%ProgramFiles%\Opera\launcher.exe",
            ]
        },
        "darwin": {"bundles": ["Opera.app"], "executable": "Contents/MacOS/Opera"},
        "linux": {"commands": ["opera"], "paths": ["/usr/bin/opera", "/opt/opera/opera"]},
    },
]


@dataclass
class DetectedBrowser:
    id: str
    name: str
    executable_path: str
    version: Optional[str] = None


class BrowserDetector:
    def __init__(
        self,
        platform: Optional[HostPlatform] = None,
        definitions: Optional[list[dict]] = None,
    ):
        self.platform = platform or current_platform()
        self.definitions = BROWSER_DEFINITIONS if definitions is None else definitions

    def locate(self, definition: dict) -> Optional[str]:
        for command in self.platform.browser_commands(definition):
            found = shutil.which(command)
            if found and os.path.exists(found):
                return found
        for candidate in self.platform.browser_candidates(definition):
            if candidate and os.path.isfile(candidate):
                return candidate
        return None

    async def version_of(self, executable: str) -> Optional[str]:
        if not self.platform.probes_browser_version():
            return None
        try:
            code, stdout, _ = await _run([executable, "--version"], timeout=5)
        except (OSError, asyncio.TimeoutError):
            log.debug(f"Could not get version for {executable}")
            return None
        if code != 0:
            return None
        m = _VERSION_RE.search(stdout)
        return m.group(0) if m else None

    async def detect(self) -> list[DetectedBrowser]:
        found: list[DetectedBrowser] = []
        for definition in self.definitions:
            path = self.locate(definition)
            if not path:
                continue
            found.append(
                DetectedBrowser(
                    id=definition["id"],
                    name=definition["name"],
                    executable_path=path,
                    version=await self.version_of(path),
                )
            )
        log.info(f"Detected {len(found)} browsers: {', '.join(b.name for b in found)}")
        return found
