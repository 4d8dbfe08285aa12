from __future__ import annotations

import threading
from typing import Callable, List, Optional, Set

import structlog

from ..core.errors import QueueUnavailableError
from .queue import Claim, JobQueue

log = structlog.get_logger(__name__)

Processor = Callable[[Claim, str], None]


class WorkerPool:
    """
    `size` thread cố định, mỗi thread: dequeue -> processor(claim, worker_id).
    Số job chạy đồng thời không bao giờ vượt quá size; queue thì không giới hạn.
    Nếu bật heartbeat: mỗi worker thread còn sống được ghi 1 key TTL trên Redis, chỉ khi
    health_check (vd. docker ping) còn pass; API đếm các key này để biết cluster còn worker.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: Processor,
        size: int = 5,
        dequeue_timeout_ms: int = 5000,
        *,
        watchdog: Optional[Callable[[], int]] = None,
        watchdog_interval_s: float = 5.0,
        backoff_s: float = 1.0,
        heartbeat_interval_s: Optional[float] = None,
        health_check: Optional[Callable[[], bool]] = None,
        name: str = "judge-worker",
    ):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.queue = queue
        self.processor = processor
        self.size = size
        self.dequeue_timeout_ms = dequeue_timeout_ms
        self.watchdog = watchdog
        self.watchdog_interval_s = watchdog_interval_s
        self.backoff_s = backoff_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.health_check = health_check
        self.name = name

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._watchdog_thread: Optional[threading.Thread] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._busy: Set[str] = set()
        self._active = 0
        self.peak_active = 0
        self.processed = 0

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.size):
            worker_id = f"{self.name}-{i}"
            t = threading.Thread(target=self._loop, args=(worker_id,), name=worker_id, daemon=True)
            t.start()
            self._threads.append(t)
        if self.watchdog is not None:
            self._watchdog_thread = threading.Thread(
                target=self._watchdog_loop, name=f"{self.name}-watchdog", daemon=True
            )
            self._watchdog_thread.start()
        if self.heartbeat_interval_s:
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_loop, name=f"{self.name}-heartbeat", daemon=True
            )
            self._heartbeat_thread.start()
        log.info("worker_pool_started", size=self.size)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Dừng nhận job mới; job đang chạy được làm nốt (chờ tối đa timeout mỗi thread)."""
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        for t in (self._watchdog_thread, self._heartbeat_thread):
            if t is not None:
                t.join(timeout)
        if self._heartbeat_thread is not None:
            self._drop_heartbeats([t.name for t in self._threads])
        self._threads = []
        self._watchdog_thread = None
        self._heartbeat_thread = None
        log.info("worker_pool_stopped", processed=self.processed)

    @property
    def workers_alive(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    @property
    def active_executions(self) -> int:
        with self._lock:
            return self._active

    # ---------- loops ----------

    def _loop(self, worker_id: str) -> None:
        wlog = log.bind(worker_id=worker_id)
        while not self._stop.is_set():
            try:
                claim = self.queue.dequeue(self.dequeue_timeout_ms)
            except QueueUnavailableError as e:
                wlog.error("worker_dequeue_failed", error=str(e))
                self._stop.wait(self.backoff_s)
                continue
            if claim is None:
                continue

            with self._lock:
                self._active += 1
                self._busy.add(worker_id)
                self.peak_active = max(self.peak_active, self._active)
            try:
                self.processor(claim, worker_id)
            except Exception:
                # 1 job lỗi không được giết worker
                wlog.exception("worker_job_failed", submission_id=claim.job.submission_id)
            finally:
                with self._lock:
                    self._active -= 1
                    self._busy.discard(worker_id)
                    self.processed += 1

    def _watchdog_loop(self) -> None:
        while not self._stop.wait(self.watchdog_interval_s):
            try:
                reaped = self.watchdog()
            except Exception:
                log.exception("watchdog_failed")
                continue
            if reaped:
                log.warning("watchdog_reaped", count=reaped)

    def _heartbeat_loop(self) -> None:
        self._beat()
        while not self._stop.wait(self.heartbeat_interval_s):
            self._beat()

    def _beat(self) -> None:
        alive = [t.name for t in self._threads if t.is_alive()]
        try:
            ok = self.health_check() if self.health_check is not None else True
        except Exception:
            log.exception("worker_health_check_failed")
            ok = False
        if not ok:
            log.warning("worker_unhealthy", workers=len(alive))
            self._drop_heartbeats(alive)
            return
        # TTL = 3 chu kỳ; process chết thì key tự hết hạn
        ttl = 3 * self.heartbeat_interval_s
        with self._lock:
            busy = set(self._busy)
        try:
            for worker_id in alive:
                self.queue.heartbeat(worker_id, ttl, "busy" if worker_id in busy else "idle")
        except QueueUnavailableError as e:
            log.error("worker_heartbeat_failed", error=str(e))

    def _drop_heartbeats(self, worker_ids: List[str]) -> None:
        try:
            for worker_id in worker_ids:
                self.queue.drop_heartbeat(worker_id)
        except QueueUnavailableError as e:
            log.error("worker_heartbeat_failed", error=str(e))
