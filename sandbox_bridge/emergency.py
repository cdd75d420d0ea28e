"""Last-resort container cleanup when the process is going down.

Runs synchronously because it may execute from an excepthook, a signal
handler or ``atexit`` where no event loop is available.
"""

import atexit
import logging
import signal
import subprocess
import sys
from typing import Callable, Optional

from sandbox_bridge.manager import CleanupStep

log = logging.getLogger(__name__)

EMERGENCY_TIMEOUT = 5.0


def emergency_cleanup(
    runtime_cmd: str, prefix: str, timeout: float = EMERGENCY_TIMEOUT
) -> list[CleanupStep]:
    """Stop every running container whose name carries ``prefix``. Never raises."""
    try:
        result = subprocess.run(
            [runtime_cmd, "ps", "-q", "--filter", f"name={prefix}"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.SubprocessError) as e:
        return [CleanupStep("list", prefix, False, str(e))]
    if result.returncode != 0:
        return [CleanupStep("list", prefix, False, result.stderr.strip())]

    ids = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    steps = [CleanupStep("list", prefix, True, f"{len(ids)} found")]
    if not ids:
        return steps

    try:
        result = subprocess.run(
            [runtime_cmd, "stop", *ids], capture_output=True, text=True, timeout=timeout
        )
        ok, detail = result.returncode == 0, result.stderr.strip()
    except (OSError, subprocess.SubprocessError) as e:
        ok, detail = False, str(e)
    steps.extend(CleanupStep("stop", cid, ok, detail) for cid in ids)
    return steps


class EmergencyCleanup:
    """Process-exit hook that runs :func:`emergency_cleanup` at most once."""

    def __init__(self, get_runtime_cmd: Callable[[], Optional[str]], prefix: str):
        self.get_runtime_cmd = get_runtime_cmd
        self.prefix = prefix
        self.steps: list[CleanupStep] = []
        self._ran = False
        self._previous_excepthook = sys.excepthook
        self._previous_signals: dict[int, object] = {}

    @property
    def ran(self) -> bool:
        return self._ran

    def run(self) -> list[CleanupStep]:
        if self._ran:
            return []
        self._ran = True
        command = self.get_runtime_cmd()
        if not command:
            return []
        log.info("Emergency cleanup: stopping sandbox containers")
        self.steps = emergency_cleanup(command, self.prefix)
        failed = [s for s in self.steps if not s.ok]
        if failed:
            log.warning(f"Emergency cleanup: {len(failed)} step(s) failed")
        return self.steps

    def _excepthook(self, exc_type, exc, tb):
        self.run()
        self._previous_excepthook(exc_type, exc, tb)

    def _on_signal(self, signum, frame):
        self.run()
        previous = self._previous_signals.get(signum)
        if callable(previous):
            previous(signum, frame)
        elif previous != signal.SIG_IGN:
            sys.exit(128 + signum)

    def install(self) -> "EmergencyCleanup":
        sys.excepthook = self._excepthook
        atexit.register(self.run)
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                self._previous_signals[signum] = signal.getsignal(signum)
                signal.signal(signum, self._on_signal)
            except ValueError:
                # Not the main thread.
                log.debug(f"Could not install handler for signal {signum}")
        return self


def install_emergency_handlers(
    get_runtime_cmd: Callable[[], Optional[str]], prefix: str
) -> EmergencyCleanup:
    return EmergencyCleanup(get_runtime_cmd, prefix).install()
