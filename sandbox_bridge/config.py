"""Tunable settings for the sandbox bridge.

Defaults live in module constants. ``BridgeConfig.from_env()`` overlays
``SANDBOX_BRIDGE_<FIELD>`` environment variables, e.g.
``SANDBOX_BRIDGE_HEARTBEAT_THRESHOLD=8`` or
``SANDBOX_BRIDGE_SETTLE_DELAY=5.0``.
"""

import dataclasses
import os
import sys
import tempfile
from dataclasses import dataclass, field
from typing import Optional

ENV_PREFIX = "SANDBOX_BRIDGE_"

# ── Defaults ─────────────────────────────────────────────────────────────

DEFAULT_IMAGE = "gnunae/sandbox:latest"
DEFAULT_RUNTIME = "auto"  # "auto", "docker" or "podman"

PORT_RANGE_START = 10000
PORT_RANGE_END = 10999
MAX_INSTANCES = 10

SANDBOX_MEMORY = "2g"
SANDBOX_CPUS = "2"

CONTAINER_PREFIX = "gnunae-"
STOP_TIMEOUT = 3

# Empirical: some hosts need longer before a crashed entrypoint shows up.
SETTLE_DELAY = 2.0
INSPECT_TIMEOUT = 5.0
LAUNCH_TIMEOUT = 60.0
PULL_TIMEOUT = 300.0
BUILD_TIMEOUT = 600.0
CRASH_LOG_TAIL = 100

HEALTH_CHECK_INTERVAL = 30.0
HEARTBEAT_INTERVAL = 10.0
HEARTBEAT_THRESHOLD = 5

AGENT_HEALTH_ATTEMPTS = 60 if sys.platform == "win32" else 30
AGENT_HEALTH_INTERVAL = 1.0

EXTERNAL_CDP_PORT = 9223
CDP_CONNECT_TIMEOUT = 15.0
CDP_POLL_INTERVAL = 0.5

CREDENTIAL_DIR = os.path.join(os.path.expanduser("~"), ".codex")
CREDENTIAL_FILE = "auth.json"

BROWSER_PROFILE_ROOT = os.path.join(tempfile.gettempdir(), "gnunae-browser-profiles")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass
class BridgeConfig:
    image: str = DEFAULT_IMAGE
    preferred_runtime: str = DEFAULT_RUNTIME
    port_range_start: int = PORT_RANGE_START
    port_range_end: int = PORT_RANGE_END
    max_instances: int = MAX_INSTANCES
    memory: str = SANDBOX_MEMORY
    cpus: str = SANDBOX_CPUS
    enable_vnc: bool = False
    container_prefix: str = CONTAINER_PREFIX
    stop_timeout: int = STOP_TIMEOUT
    settle_delay: float = SETTLE_DELAY
    inspect_timeout: float = INSPECT_TIMEOUT
    launch_timeout: float = LAUNCH_TIMEOUT
    pull_timeout: float = PULL_TIMEOUT
    build_timeout: float = BUILD_TIMEOUT
    crash_log_tail: int = CRASH_LOG_TAIL
    health_check_interval: float = HEALTH_CHECK_INTERVAL
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    heartbeat_threshold: int = HEARTBEAT_THRESHOLD
    agent_health_attempts: int = AGENT_HEALTH_ATTEMPTS
    agent_health_interval: float = AGENT_HEALTH_INTERVAL
    external_cdp_port: int = EXTERNAL_CDP_PORT
    cdp_connect_timeout: float = CDP_CONNECT_TIMEOUT
    cdp_poll_interval: float = CDP_POLL_INTERVAL
    mount_credentials: bool = True
    credential_dir: str = CREDENTIAL_DIR
    credential_file: str = CREDENTIAL_FILE
    browser_profile_root: str = BROWSER_PROFILE_ROOT
    extra_env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"Invalid port range {self.port_range_start}-{self.port_range_end}"
            )
        if self.heartbeat_threshold < 1:
            raise ValueError("heartbeat_threshold must be at least 1")
        if self.preferred_runtime not in ("auto", "docker", "podman"):
            raise ValueError(f"Unknown runtime: {self.preferred_runtime!r}")

    @property
    def preferred_engine(self) -> Optional[str]:
        return None if self.preferred_runtime == "auto" else self.preferred_runtime

    @property
    def credential_path(self) -> str:
        return os.path.join(self.credential_dir, self.credential_file)

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None, **overrides) -> "BridgeConfig":
        environ = os.environ if environ is None else environ
        values: dict = {}
        for f in dataclasses.fields(cls):
            if f.name == "extra_env":
                continue
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        values.update(overrides)
        return cls(**values)


def _coerce(name: str, type_, raw: str):
    type_name = type_ if isinstance(type_, str) else getattr(type_, "__name__", "")
    try:
        if type_name == "bool":
            lowered = raw.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
            raise ValueError(raw)
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}")
    return raw
