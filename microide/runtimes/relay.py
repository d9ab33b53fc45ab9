from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

RELAY_EVENTS = frozenset({"log", "preview-update", "gui-frame"})


class _JsonSender(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Peer:
    """One authenticated connection and its outbound FIFO.

    Every frame for a connection goes through its queue, so frames published
    by one sender reach each receiver in send order.
    """

    def __init__(self, peer_id: int, ws: _JsonSender, *, queue_size: int) -> None:
        self.peer_id = peer_id
        self._ws = ws
        self._queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=queue_size
        )
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._pump())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def offer(self, frame: dict[str, Any]) -> bool:
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    async def _pump(self) -> None:
        while True:
            frame = await self._queue.get()
            try:
                await self._ws.send_json(frame)
            except Exception as exc:
                # The receive loop notices the disconnect and unregisters us.
                logger.info("Relay send to peer %s failed: %s", self.peer_id, exc)
                return


class BroadcastRelay:
    """Fire-and-forget fan-out of events to every other connected peer.

    There is no delivery guarantee and no replay: a peer whose queue is full
    drops the frame, and a peer that is not connected never sees it.
    """

    def __init__(self, *, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._peers: dict[int, Peer] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._peers)

    def register(self, ws: _JsonSender) -> Peer:
        peer = Peer(next(self._ids), ws, queue_size=self._queue_size)
        self._peers[peer.peer_id] = peer
        peer.start()
        return peer

    async def unregister(self, peer: Peer) -> None:
        self._peers.pop(peer.peer_id, None)
        await peer.stop()

    def publish(self, sender: Peer, event: str, data: Any) -> int:
        """Queue ``event`` for every peer except ``sender``; never blocks."""
        frame = {"type": event, "data": data}
        delivered = 0
        for peer in list(self._peers.values()):
            if peer is sender:
                continue
            if peer.offer(frame):
                delivered += 1
            else:
                logger.warning(
                    "Relay queue full for peer %s; dropping %s", peer.peer_id, event
                )
        return delivered
