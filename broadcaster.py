# =============================================================================
# Progress Broadcaster — fan-out of session events to SSE clients
# =============================================================================
#
# Every agent session publishes small JSON payloads ("status", "text",
# "section_completed", ...). Each payload gets a per-session sequence number and
# lands in a bounded backlog, so a client that reconnects with Last-Event-ID
# picks up where it left off. A "completed" or "error" payload closes the
# session's stream for every subscriber.
# =============================================================================

import asyncio
import json
import logging
from collections import deque
from typing import AsyncIterator, Optional

logger = logging.getLogger("broadcaster")

CLOSING_EVENT_TYPES = {"completed", "error"}


def format_sse(event_id: Optional[int], payload: dict) -> str:
    """Encode one SSE frame."""
    data = json.dumps(payload, default=str)
    if event_id is None:
        return f"data: {data}\n\n"
    return f"id: {event_id}\ndata: {data}\n\n"


class _Channel:
    def __init__(self, backlog_size: int):
        self.sequence = 0
        self.backlog: deque = deque(maxlen=backlog_size)
        self.subscribers: set[asyncio.Queue] = set()
        self.closed = False


class ProgressBroadcaster:
    """In-process pub/sub keyed by session id."""

    def __init__(self, backlog_size: int = 500, keepalive_seconds: float = 15.0):
        self.backlog_size = backlog_size
        self.keepalive_seconds = keepalive_seconds
        self._channels: dict[str, _Channel] = {}

    def _channel(self, session_id: str) -> _Channel:
        channel = self._channels.get(session_id)
        if channel is None:
            channel = _Channel(self.backlog_size)
            self._channels[session_id] = channel
        return channel

    def publish(self, session_id: str, payload: dict) -> Optional[dict]:
        """Record and fan out one event. Safe to call with nobody listening.

        Once a closing event went out, later events are dropped until reopen().
        """
        channel = self._channel(session_id)
        if channel.closed:
            logger.debug(f"[{session_id}] Dropped {payload.get('type')} event on closed stream")
            return None
        channel.sequence += 1
        event = {"id": channel.sequence, "data": payload}
        channel.backlog.append(event)
        for queue in list(channel.subscribers):
            queue.put_nowait(event)

        if payload.get("type") in CLOSING_EVENT_TYPES:
            channel.closed = True
            for queue in list(channel.subscribers):
                queue.put_nowait(None)
        return event

    def history(self, session_id: str, since: int = 0) -> list[dict]:
        channel = self._channels.get(session_id)
        if channel is None:
            return []
        return [e for e in channel.backlog if e["id"] > since]

    def has_history(self, session_id: str) -> bool:
        return session_id in self._channels

    def is_closed(self, session_id: str) -> bool:
        channel = self._channels.get(session_id)
        return bool(channel and channel.closed)

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channels.get(session_id)
        return len(channel.subscribers) if channel else 0

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._channel(session_id).subscribers.add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        channel = self._channels.get(session_id)
        if channel:
            channel.subscribers.discard(queue)

    def reopen(self, session_id: str) -> None:
        """
        Accept events again after a closing event (a failed session being re-run).

        The previous run's backlog is dropped so new subscribers do not replay its
        closing event. Sequence ids keep counting, so Last-Event-ID stays valid.
        """
        channel = self._channels.get(session_id)
        if channel and channel.closed:
            channel.backlog.clear()
            channel.closed = False

    def forget(self, session_id: str) -> None:
        """Drop backlog and state for a finished session."""
        channel = self._channels.pop(session_id, None)
        if channel:
            for queue in list(channel.subscribers):
                queue.put_nowait(None)

    async def events(self, session_id: str, since: int = 0) -> AsyncIterator[str]:
        """
        Yield SSE frames: backlog after `since`, then live events, with keepalive
        comments during silence. Ends once the session's stream closes.
        """
        queue = self.subscribe(session_id)
        last_id = since
        try:
            for event in self.history(session_id, since):
                last_id = event["id"]
                yield format_sse(event["id"], event["data"])

            if self.is_closed(session_id):
                return

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.keepalive_seconds)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                # Already sent from the backlog
                if event["id"] <= last_id:
                    continue
                last_id = event["id"]
                yield format_sse(event["id"], event["data"])
        finally:
            self.unsubscribe(session_id, queue)
            logger.debug(f"[{session_id}] SSE subscriber detached after event {last_id}")
