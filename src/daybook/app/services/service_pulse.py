from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol

from blinker import Namespace, Signal

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PulseEvent:
    """Snapshot of a published service pulse."""

    topic: str
    payload: Mapping[str, Any]
    timestamp: float

    def as_payload(self) -> dict[str, Any]:
        return dict(self.payload)


class PulseListener(Protocol):
    def __call__(self, event: PulseEvent) -> Awaitable[None] | None:
        ...


class ServicePulse:
    """Blinker-backed broadcast of background service activity.

    Summary regenerations, fallbacks and invalidations are announced here so
    they stay observable even though callers never await them.
    """

    def __init__(self) -> None:
        self._latest: dict[str, PulseEvent] = {}
        self._counts: dict[str, int] = {}
        self._namespace = Namespace()
        self._broadcast_signal = Signal("service_pulse:*")

    def signal(self, topic: str) -> Signal:
        return self._namespace.signal(topic)

    def emit(self, topic: str, payload: Mapping[str, Any]) -> PulseEvent:
        """Record ``payload`` under ``topic`` and notify subscribers."""

        event = PulseEvent(
            topic=topic,
            payload=MappingProxyType(dict(payload)),
            timestamp=time.monotonic(),
        )
        self._latest[topic] = event
        self._counts[topic] = self._counts.get(topic, 0) + 1
        for signal in (self.signal(topic), self._broadcast_signal):
            signal.send(self, event=event)
        return event

    def subscribe(
        self,
        listener: PulseListener,
        *,
        topics: Iterable[str] | None = None,
    ) -> Callable[[], None]:
        """Subscribe ``listener`` and return a callable that unsubscribes it."""

        def _receiver(sender: Any, *, event: PulseEvent | None = None, **_: Any) -> None:
            if event is None:
                return
            try:
                result = listener(event)
            except Exception:
                logger.exception("Service pulse listener failed for topic %s", event.topic)
                return
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                task.add_done_callback(_log_listener_failure)

        if topics is None:
            signals = [self._broadcast_signal]
        else:
            signals = [self.signal(topic) for topic in dict.fromkeys(topics)]

        for sig in signals:
            sig.connect(_receiver, sender=self, weak=False)

        def unsubscribe() -> None:
            for sig in signals:
                sig.disconnect(_receiver, sender=self)

        return unsubscribe

    def latest(self, topic: str) -> dict[str, Any] | None:
        event = self._latest.get(topic)
        return event.as_payload() if event is not None else None

    def count(self, topic: str) -> int:
        return self._counts.get(topic, 0)

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {topic: event.as_payload() for topic, event in self._latest.items()}


def _log_listener_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Async service pulse listener failed", exc_info=exc)


__all__ = ["PulseEvent", "PulseListener", "ServicePulse"]
