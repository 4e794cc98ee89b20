from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Protocol

from starlette.websockets import WebSocket

from agent_canvas.models import ChangeEvent

logger = logging.getLogger(__name__)


class SubscriberGone(Exception):
    pass


class Subscriber(Protocol):
    def send(self, message: str) -> None:
        """Accept one serialized event without blocking. Raise if the subscriber is dead."""


class BroadcastHub:
    """
    Best-effort fan-out of change events to live viewers.

    At-most-once, no retry, no backlog: a subscriber whose `send` raises is dropped on
    the spot and delivery continues with the rest. Publishing never awaits anything,
    so a slow or dead viewer cannot stall the mutation that triggered it.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, sub: object) -> bool:
        return sub in self._subscribers

    def subscribe(self, sub: Subscriber, *, replay: Iterable[ChangeEvent] = ()) -> bool:
        """
        Register `sub`, first handing it `replay` (the bootstrap state) so it converges
        without event history. Returns False if the subscriber died during replay.
        """
        try:
            for ev in replay:
                sub.send(ev.model_dump_json())
        except Exception:
            logger.debug("subscriber failed during bootstrap replay; not registering", exc_info=True)
            return False
        self._subscribers.append(sub)
        return True

    def unsubscribe(self, sub: Subscriber) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)

    def publish(self, *events: ChangeEvent) -> int:
        """
        Deliver each event (serialized once) to every current subscriber.
        Returns the number of subscribers dropped.
        """
        dropped = 0
        for ev in events:
            message = ev.model_dump_json()
            for sub in list(self._subscribers):
                try:
                    sub.send(message)
                except Exception:
                    self.unsubscribe(sub)
                    dropped += 1
                    logger.debug("dropped subscriber after failed delivery of %s", ev.type, exc_info=True)
        if dropped:
            logger.info("broadcast dropped %d subscriber(s); %d remaining", dropped, len(self._subscribers))
        return dropped


class WebSocketSubscriber:
    """
    Subscriber handle for one viewer socket.

    `send` only enqueues; `run()` is the writer task draining the queue onto the socket.
    A full queue (viewer too slow) or a failed socket write closes the handle, and the
    next `send` raises SubscriberGone so the hub drops it.
    """

    def __init__(self, websocket: WebSocket, *, max_pending: int = 256) -> None:
        self._ws = websocket
        self._q: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=max(1, max_pending))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: str) -> None:
        if self._closed:
            raise SubscriberGone("viewer connection closed")
        try:
            self._q.put_nowait(message)
        except asyncio.QueueFull as e:
            self._closed = True
            raise SubscriberGone("viewer is not keeping up") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._q.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def run(self) -> None:
        try:
            while True:
                message = await self._q.get()
                if message is None:
                    return
                await self._ws.send_text(message)
                if self._closed and self._q.empty():
                    # Dropped as too slow: end the connection so the viewer reconnects and replays.
                    await self._ws.close(code=1013)
                    return
        except Exception:
            self._closed = True
            logger.debug("viewer socket write failed", exc_info=True)
