import threading
from typing import Callable, Dict, Optional, Tuple

RATE_LIMIT_MESSAGE = 'Too many requests, please slow down'
WINDOW_MS = 1000
# entries are kept this long past their window before the sweep drops them
STALE_GRACE_MS = 5000


class SocketRateLimiter:
    """One-second window per (connection, event).

    Bursts of up to ``max_per_second`` per window are accepted; the
    window restarts on the first event after it expires.
    """

    def __init__(self, clock, logger=None, default_limit: int = 10, cleanup_interval_ms: int = 10000):
        self.clock = clock
        self.logger = logger
        self.default_limit = default_limit
        self.cleanup_interval_ms = cleanup_interval_ms
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], Dict[str, int]] = {}
        self._cleanup_timer = None

    def check_rate_limit(self, sid: str, event: str, max_per_second: Optional[int] = None,
                         notifier: Optional[Callable[[str, dict], None]] = None) -> bool:
        limit = max_per_second or self.default_limit
        now = self.clock.now_ms()
        key = (sid, event)
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now >= entry['reset_at']:
                self._windows[key] = {'count': 1, 'reset_at': now + WINDOW_MS}
                return True
            if entry['count'] >= limit:
                denied = True
            else:
                entry['count'] += 1
                denied = False
        if denied:
            if self.logger is not None:
                self.logger.debug(f"[rate-limited] sid={sid} event={event} limit={limit}/s")
            if notifier is not None:
                notifier('rate-limited', {'event': event, 'message': RATE_LIMIT_MESSAGE})
            return False
        return True

    def prune(self) -> int:
        now = self.clock.now_ms()
        with self._lock:
            stale = [k for k, v in self._windows.items() if now > v['reset_at'] + STALE_GRACE_MS]
            for k in stale:
                del self._windows[k]
        return len(stale)

    def forget(self, sid: str) -> None:
        with self._lock:
            for key in [k for k in self._windows if k[0] == sid]:
                del self._windows[key]

    def start_cleanup(self) -> None:
        if self._cleanup_timer is not None and self._cleanup_timer.pending:
            return
        self._cleanup_timer = self.clock.call_later(self.cleanup_interval_ms, self._cleanup_tick, label='rate-limit-sweep')

    def _cleanup_tick(self) -> None:
        self._cleanup_timer = None
        removed = self.prune()
        if removed and self.logger is not None:
            self.logger.debug(f"[rate-limit-sweep] removed={removed}")
        self.start_cleanup()

    def stop_cleanup(self) -> None:
        if self._cleanup_timer is not None:
            self._cleanup_timer.cancel()
            self._cleanup_timer = None

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def get_stats(self) -> dict:
        with self._lock:
            return {'trackedKeys': len(self._windows)}
