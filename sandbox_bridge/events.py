"""Typed lifecycle events and the bus that delivers them."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SandboxEvent:
    timestamp: float = field(default_factory=time.time, compare=False, kw_only=True)


@dataclass(frozen=True)
class RuntimeDetected(SandboxEvent):
    runtime: Any


@dataclass(frozen=True)
class RuntimeUnavailable(SandboxEvent):
    reason: str


@dataclass(frozen=True)
class InstanceCreated(SandboxEvent):
    instance: Any


@dataclass(frozen=True)
class InstanceStarted(SandboxEvent):
    instance: Any


@dataclass(frozen=True)
class InstanceStopped(SandboxEvent):
    instance: Any


@dataclass(frozen=True)
class InstanceErrored(SandboxEvent):
    instance: Any
    error: str


@dataclass(frozen=True)
class ContainerStopped(SandboxEvent):
    """The in-sandbox agent stopped answering heartbeats."""

    instance_id: str
    reason: str
    will_fallback: bool = True


Observer = Callable[[SandboxEvent], None]


class EventBus:
    """Fan-out of events to synchronous observers and asyncio queues.

    Observers are called inline; a failing observer is logged and does not
    prevent delivery to the others. Queue subscribers receive every event
    published after they subscribed.
    """

    def __init__(self):
        self._observers: list[Observer] = []
        self._queues: list[asyncio.Queue] = []

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: SandboxEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                log.warning(f"Event observer failed on {type(event).__name__}: {e}")
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.warning(f"Event queue full, dropping {type(event).__name__}")
