"""Heartbeat supervision of in-sandbox agents.

A single missed heartbeat is treated as transient. Only ``threshold``
consecutive failures retire a sandbox; any success resets the count.
This is separate from the manager's health check, which asks the
container runtime whether the container itself is still running.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sandbox_bridge.events import ContainerStopped, EventBus

log = logging.getLogger(__name__)

HEARTBEAT_LOST_REASON = "Heartbeat timeout - container unresponsive or stopped"

Probe = Callable[[], Awaitable[Any]]
OnLost = Callable[[str, str], Awaitable[None]]


@dataclass
class _Watch:
    instance_id: str
    probe: Probe
    on_lost: Optional[OnLost]
    failures: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class HeartbeatMonitor:
    def __init__(self, interval: float, threshold: int, events: Optional[EventBus] = None):
        self.interval = interval
        self.threshold = threshold
        self.events = events or EventBus()
        self._watches: dict[str, _Watch] = {}

    def watch(self, instance_id: str, probe: Probe, on_lost: Optional[OnLost] = None) -> None:
        self.unwatch(instance_id)
        w = _Watch(instance_id=instance_id, probe=probe, on_lost=on_lost)
        w.task = asyncio.create_task(self._loop(w))
        self._watches[instance_id] = w

    def unwatch(self, instance_id: str) -> None:
        w = self._watches.pop(instance_id, None)
        if w and w.task and w.task is not asyncio.current_task():
            w.task.cancel()

    def is_watching(self, instance_id: str) -> bool:
        return instance_id in self._watches

    def failures(self, instance_id: str) -> int:
        w = self._watches.get(instance_id)
        return w.failures if w else 0

    async def beat(self, w: _Watch) -> bool:
        """Send one heartbeat; returns True when the sandbox should be retired."""
        try:
            result = await w.probe()
            ok = bool(result)
        except Exception as e:
            log.debug(f"Heartbeat probe for {w.instance_id} raised: {e}")
            ok = False

        if ok:
            w.failures = 0
            return False

        w.failures += 1
        log.warning(f"Heartbeat failed for {w.instance_id} ({w.failures}/{self.threshold})")
        return w.failures >= self.threshold

    async def _loop(self, w: _Watch):
        try:
            while True:
                await asyncio.sleep(self.interval)
                if await self.beat(w):
                    break
        except asyncio.CancelledError:
            return

        log.warning(f"Container for {w.instance_id} appears to be gone, retiring it")
        if self._watches.get(w.instance_id) is w:
            del self._watches[w.instance_id]
        self.events.publish(
            ContainerStopped(instance_id=w.instance_id, reason=HEARTBEAT_LOST_REASON)
        )
        if w.on_lost is not None:
            try:
                await w.on_lost(w.instance_id, HEARTBEAT_LOST_REASON)
            except Exception as e:
                log.error(f"Retiring {w.instance_id} after heartbeat loss failed: {e}")

    async def stop(self) -> None:
        watches = list(self._watches.values())
        self._watches.clear()
        tasks = [w.task for w in watches if w.task and w.task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
