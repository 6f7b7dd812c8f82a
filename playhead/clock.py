from __future__ import annotations

import heapq
import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple


ClockCallback = Callable[[float], None]
TimeSource = Callable[[], float]

STARTED = "started"
PAUSED = "paused"
STOPPED = "stopped"


class TransportClock:
    """Real-time transport with a one-shot callback queue keyed by position.

    Positions are transport seconds; `start(at, pos)` anchors transport
    position `pos` to clock time `at`. Callbacks fire on the clock thread in
    (position, insertion) order and receive the clock time they were due.
    """

    def __init__(self, time_source: Optional[TimeSource] = None, threaded: bool = True):
        self._time: TimeSource = time_source or time.monotonic
        self._threaded = threaded
        self._queue: List[Tuple[float, int, ClockCallback]] = []
        self._counter = 0
        self._lock = threading.RLock()
        self._state = STOPPED
        self._anchor_clock = 0.0
        self._anchor_position = 0.0
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lateness_ms: Deque[float] = deque(maxlen=512)

    # --- Contract used by the scheduler ---
    def now(self) -> float:
        return self._time()

    @property
    def state(self) -> str:
        return self._state

    @property
    def position(self) -> float:
        with self._lock:
            if self._state != STARTED:
                return self._anchor_position
            return self._anchor_position + max(0.0, self._time() - self._anchor_clock)

    @position.setter
    def position(self, seconds: float) -> None:
        with self._lock:
            if self._state == STARTED:
                raise RuntimeError("cannot set clock position while started")
            self._anchor_position = max(0.0, float(seconds))

    def schedule_once(self, callback: ClockCallback, position_seconds: float) -> int:
        with self._lock:
            self._counter += 1
            heapq.heappush(self._queue, (float(position_seconds), self._counter, callback))
            return self._counter

    def cancel_all(self) -> None:
        with self._lock:
            self._queue.clear()

    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def start(self, at_clock_time: Optional[float] = None, position_seconds: float = 0.0) -> None:
        with self._lock:
            self._anchor_clock = self._time() if at_clock_time is None else float(at_clock_time)
            self._anchor_position = max(0.0, float(position_seconds))
            self._state = STARTED
        if self._threaded:
            self._start_thread()

    def pause(self) -> None:
        with self._lock:
            if self._state == STARTED:
                self._anchor_position = self.position
            self._state = PAUSED
        self._stop_thread()

    def stop(self) -> None:
        with self._lock:
            self._state = STOPPED
            self._anchor_position = 0.0
        self._stop_thread()

    def poll(self) -> int:
        """Fire every callback that is due; returns how many ran."""
        fired = 0
        while True:
            with self._lock:
                if self._state != STARTED or not self._queue:
                    break
                pos, _, cb = self._queue[0]
                due = self._anchor_clock + (pos - self._anchor_position)
                now = self._time()
                if due > now:
                    break
                heapq.heappop(self._queue)
                self._lateness_ms.append(max(0.0, (now - due) * 1000.0))
            try:
                cb(due)
            except Exception as e:
                print(f"[clock] callback error: {e}", flush=True)
            fired += 1
        return fired

    # --- Thread ---
    def _start_thread(self) -> None:
        if self._t and self._t.is_alive():
            return
        self._stop.clear()
        self._t = threading.Thread(target=self._run, daemon=True)
        self._t.start()

    def _stop_thread(self) -> None:
        self._stop.set()
        t = self._t
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=1.0)
        self._t = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll()
            time.sleep(0.002)

    # --- Metrics ---
    def _percentile(self, values: List[float], pct: float) -> float:
        if not values:
            return 0.0
        xs = sorted(values)
        k = (len(xs) - 1) * pct
        f = int(k)
        c = min(f + 1, len(xs) - 1)
        if f == c:
            return xs[f]
        d0 = xs[f] * (c - k)
        d1 = xs[c] * (k - f)
        return d0 + d1

    def get_metrics(self) -> dict:
        # Callback lateness p95/p99 over the recent window
        with self._lock:
            samples = list(self._lateness_ms)
            pending = len(self._queue)
        return {
            "latenessMsP95": round(self._percentile(samples, 0.95), 3),
            "latenessMsP99": round(self._percentile(samples, 0.99), 3),
            "pending": pending,
        }
