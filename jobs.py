"""In-memory job records and per-job progress fan-out.

Each job keeps an append-only event log. Subscribing copies the log into the
subscriber's queue and registers it under the same lock that publishing
takes, so a subscriber sees every event exactly once, in emission order, no
matter when it joins.
"""

from __future__ import annotations

import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set

from errors import JobStateError


EVENT_TYPES = ("pipeline", "network", "console", "warning", "error", "complete")
TERMINAL_STATES = ("completed", "failed")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Event:
    type: str
    message: str
    timestamp: str = field(default_factory=utc_now)
    result: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.result is not None and self.type in ("complete", "error")

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.type, "message": self.message, "timestamp": self.timestamp}
        if self.result is not None:
            out["result"] = self.result
        return out


@dataclass
class Job:
    id: str
    source_url: str
    status: str = "running"
    started_at: str = field(default_factory=utc_now)
    ended_at: Optional[str] = None
    events: List[Event] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    finished_monotonic: Optional[float] = None

    def to_dict(self, include_events: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "source_url": self.source_url,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "result": self.result,
        }
        if include_events:
            out["events"] = [event.to_dict() for event in self.events]
        return out


class Subscription:
    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._queue: "queue.Queue[Event]" = queue.Queue()

    def deliver(self, event: Event) -> None:
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def stream(self, heartbeat: float = 15.0) -> Iterator[Optional[Event]]:
        """Yield events until the terminal one; ``None`` marks an idle heartbeat."""
        while True:
            event = self.get(timeout=heartbeat)
            yield event
            if event is not None and event.is_terminal:
                return


class JobLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def create(self, source_url: str) -> Job:
        job = Job(id=uuid.uuid4().hex, source_url=source_url)
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.to_dict() if job else None

    def list_jobs(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [job.to_dict(include_events=False) for job in self._jobs.values()]

    def status_counts(self) -> Dict[str, int]:
        counts = {"running": 0, "completed": 0, "failed": 0}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    def publish(self, job_id: str, event: Event) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            self._append(job, event)

    def emit(self, job_id: str, kind: str, message: str) -> None:
        if kind not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {kind}")
        self.publish(job_id, Event(type=kind, message=message))

    def finish(self, job_id: str, success: bool, result: Dict[str, Any], message: str, event_type: str = "complete") -> None:
        """Move a running job to its terminal state and publish the closing event."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            if job.status in TERMINAL_STATES:
                raise JobStateError(f"Job {job_id} already {job.status}")
            job.status = "completed" if success else "failed"
            job.ended_at = utc_now()
            job.finished_monotonic = time.monotonic()
            job.result = dict(result)
            self._append(job, Event(type=event_type, message=message, result=job.result))

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(job_id)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            for event in job.events:
                subscription.deliver(event)
            self._subscribers.setdefault(job_id, set()).add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            subscribers.discard(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def prune(self, retention_seconds: float) -> int:
        """Drop terminal jobs older than ``retention_seconds`` that nobody is watching."""
        now = time.monotonic()
        removed = 0
        with self._lock:
            for job_id, job in list(self._jobs.items()):
                if job.status not in TERMINAL_STATES or job.finished_monotonic is None:
                    continue
                if self._subscribers.get(job_id):
                    continue
                if (now - job.finished_monotonic) > retention_seconds:
                    self._jobs.pop(job_id, None)
                    removed += 1
        return removed

    def _append(self, job: Job, event: Event) -> None:
        job.events.append(event)
        for subscription in self._subscribers.get(job.id, ()):
            subscription.deliver(event)
