"""Per-room coalescing of high-frequency broadcasts.

Queued event types are flushed in the order they were first queued in
the current batch; payloads within a type keep their enqueue order.
"""

import threading
from typing import Any, Dict, List, Optional

BATCHABLE_EVENTS = frozenset({'answer-statistics', 'player-answered', 'leaderboard-update'})
# only the newest payload of these matters
DELTA_EVENTS = frozenset({'answer-statistics', 'leaderboard-update'})
FLUSH_TRIGGERS = frozenset({'question-ended', 'game-ended', 'next-question', 'time-up'})


class _RoomBatch:
    __slots__ = ('lock', 'queues', 'timer')

    def __init__(self):
        self.lock = threading.RLock()
        self.queues: Dict[str, List[Any]] = {}
        self.timer = None


class SocketBatchService:
    def __init__(self, emitter, clock, logger=None, enabled: bool = True,
                 batch_interval_ms: int = 500, max_batch_size: int = 50):
        self.emitter = emitter
        self.clock = clock
        self.logger = logger
        self.enabled = enabled
        self.batch_interval_ms = batch_interval_ms
        self.max_batch_size = max_batch_size
        self._lock = threading.Lock()
        self._rooms: Dict[str, _RoomBatch] = {}

    def _room(self, room: str, create: bool = True) -> Optional[_RoomBatch]:
        with self._lock:
            batch = self._rooms.get(room)
            if batch is None and create:
                batch = self._rooms[room] = _RoomBatch()
            return batch

    def emit(self, room: str, event: str, payload=None, force_batch: bool = False) -> None:
        if not self.enabled or (event not in BATCHABLE_EVENTS and not force_batch):
            self.emitter.emit(event, payload, to=room)
            return

        batch = self._room(room)
        with batch.lock:
            if event in DELTA_EVENTS:
                batch.queues[event] = [payload]
            else:
                queue = batch.queues.setdefault(event, [])
                queue.append(payload)
                if len(queue) >= self.max_batch_size:
                    self._flush_locked(room, batch)
                    return
            if batch.timer is None or not batch.timer.pending:
                batch.timer = self.clock.call_later(
                    self.batch_interval_ms, lambda: self._on_timer(room), label=f'batch:{room}'
                )

    def emit_immediate(self, room: str, event: str, payload=None) -> None:
        if event in FLUSH_TRIGGERS:
            self.flush_room(room)
        self.emitter.emit(event, payload, to=room)

    def _on_timer(self, room: str) -> None:
        batch = self._room(room, create=False)
        if batch is None:
            return
        with batch.lock:
            batch.timer = None
            self._flush_locked(room, batch)

    def flush_room(self, room: str) -> None:
        batch = self._room(room, create=False)
        if batch is None:
            return
        with batch.lock:
            self._flush_locked(room, batch)

    def _flush_locked(self, room: str, batch: _RoomBatch) -> None:
        if batch.timer is not None:
            batch.timer.cancel()
            batch.timer = None
        queues, batch.queues = batch.queues, {}
        for event, payloads in queues.items():
            if not payloads:
                continue
            if len(payloads) == 1:
                self.emitter.emit(event, payloads[0], to=room)
            else:
                self.emitter.emit(f'{event}-batch', payloads, to=room)

    def flush_all(self) -> None:
        with self._lock:
            rooms = list(self._rooms)
        for room in rooms:
            self.flush_room(room)

    def cleanup_room(self, room: str) -> None:
        batch = self._room(room, create=False)
        if batch is None:
            return
        with batch.lock:
            self._flush_locked(room, batch)
        with self._lock:
            self._rooms.pop(room, None)

    def shutdown(self) -> None:
        self.flush_all()
        with self._lock:
            self._rooms.clear()
        if self.logger is not None:
            self.logger.info("[batch-shutdown] flushed all rooms")

    def get_stats(self) -> dict:
        with self._lock:
            rooms = list(self._rooms.values())
        pending = 0
        for batch in rooms:
            with batch.lock:
                pending += sum(len(q) for q in batch.queues.values())
        return {
            'enabled': self.enabled,
            'activeRooms': len(rooms),
            'pendingEvents': pending,
            'batchInterval': self.batch_interval_ms,
            'maxBatchSize': self.max_batch_size,
        }
