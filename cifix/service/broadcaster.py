from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Set


TERMINAL_EVENT_TYPES = frozenset({"done", "error"})


@dataclass(frozen=True)
class StreamEvent:
    type: str
    payload: Any


def format_sse(event: StreamEvent) -> str:
    return f"data: {json.dumps({'type': event.type, 'payload': event.payload}, default=str)}\n\n"


class SnapshotBroadcaster:
    """
    Per-job fan-out of stream events to subscriber queues.

    Subscribers register a queue when their stream opens and must unsubscribe when it closes;
    nothing is garbage-collected implicitly. A full or broken queue is skipped so one slow
    observer never blocks delivery to the rest.
    """

    def __init__(self, *, max_queue: int = 256) -> None:
        self._max_queue = int(max_queue)
        self._channels: Dict[str, Set["asyncio.Queue[StreamEvent]"]] = {}

    def subscribe(self, job_id: str) -> "asyncio.Queue[StreamEvent]":
        q: "asyncio.Queue[StreamEvent]" = asyncio.Queue(maxsize=self._max_queue)
        self._channels.setdefault(job_id, set()).add(q)
        return q

    def unsubscribe(self, job_id: str, q: "asyncio.Queue[StreamEvent]") -> None:
        subs = self._channels.get(job_id)
        if not subs:
            return
        subs.discard(q)
        if not subs:
            self._channels.pop(job_id, None)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._channels.get(job_id) or ())

    def broadcast(self, job_id: str, event_type: str, payload: Any) -> int:
        ev = StreamEvent(type=event_type, payload=payload)
        delivered = 0
        for q in list(self._channels.get(job_id) or ()):
            try:
                q.put_nowait(ev)
                delivered += 1
            except asyncio.QueueFull:
                if event_type not in TERMINAL_EVENT_TYPES:
                    continue
                # The stream closes on a terminal event; make room rather than lose it.
                try:
                    q.get_nowait()
                    q.put_nowait(ev)
                    delivered += 1
                except (asyncio.QueueEmpty, asyncio.QueueFull):
                    continue
            except Exception:  # noqa: BLE001
                continue
        return delivered
