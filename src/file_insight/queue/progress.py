"""In-process progress subscriptions for Active jobs."""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator

from file_insight.queue.models import ProgressEvent


class ProgressSubscription:
    """Channel receiving progress events for one job, or for all jobs when ``job_id`` is None."""

    def __init__(self, hub: ProgressHub, job_id: str | None) -> None:
        self.job_id = job_id
        self._hub = hub
        self._events: queue.Queue[ProgressEvent] = queue.Queue()

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None when ``timeout`` elapses first."""

        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, *, timeout: float | None = None) -> Iterator[ProgressEvent]:
        """Yield events until a terminal state is seen or no event arrives within ``timeout``."""

        while True:
            event = self.get(timeout=timeout)
            if event is None:
                return
            yield event
            if self.job_id is not None and event.state.terminal:
                return

    def close(self) -> None:
        self._hub.unsubscribe(self)

    def _deliver(self, event: ProgressEvent) -> None:
        if self.job_id is None or self.job_id == event.job_id:
            self._events.put(event)

    def __enter__(self) -> ProgressSubscription:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class ProgressHub:
    """Fan-out of worker progress events to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[ProgressSubscription] = []

    def subscribe(self, job_id: str | None = None) -> ProgressSubscription:
        subscription = ProgressSubscription(self, job_id)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription._deliver(event)  # noqa: SLF001
