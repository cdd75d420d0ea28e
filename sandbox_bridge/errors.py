"""Exception types raised by the sandbox orchestration layer."""

from typing import Any, Optional


class SandboxError(RuntimeError):
    """Base error. ``reason`` is always a human-readable explanation."""

    def __init__(self, reason: str, instance: Optional[Any] = None):
        super().__init__(reason)
        self.reason = reason
        # Detached snapshot of the instance the failure belongs to, if any.
        self.instance = instance


class RuntimeUnavailable(SandboxError):
    def __init__(self, reason: str, runtime_info: Optional[Any] = None):
        super().__init__(reason)
        self.runtime_info = runtime_info


class PortExhausted(SandboxError):
    def __init__(self, range_start: int, range_end: int):
        super().__init__(
            f"No available ports in configured range {range_start}-{range_end}"
        )
        self.range_start = range_start
        self.range_end = range_end


NoPortsAvailable = PortExhausted


class LaunchCrashed(SandboxError):
    def __init__(self, reason: str, logs: str = ""):
        super().__init__(reason)
        self.logs = logs


class InstanceNotFound(SandboxError):
    def __init__(self, instance_id: str):
        super().__init__(f"Instance {instance_id} not found")
        self.instance_id = instance_id


class InvalidSandboxConfig(SandboxError):
    pass


class SandboxCreateError(SandboxError):
    """Unexpected failure during create; the original error is ``__cause__``."""


class CdpConnectFailed(SandboxError):
    pass


class BrowserNotFound(SandboxError):
    def __init__(self, browser_id: str):
        super().__init__(f"Browser not found: {browser_id}")
        self.browser_id = browser_id


class BrowserSessionConflict(SandboxError):
    pass


class SandboxAPIError(SandboxError):
    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.status_code = status_code
