"""
Job queue trên Redis list.

  judge_queue              LPUSH khi submit, BRPOPLPUSH khi worker lấy job (FIFO)
  judge_queue:processing   job đang được xử lý (chưa ack)
  judge_queue:claims       hash submission_id -> {deadline, payload} cho watchdog
  judge_queue:workers:<id> heartbeat của từng worker thread (TTL), giá trị "idle" | "busy"
"""
from __future__ import annotations

import json
import math
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

import redis
import structlog

from ..core.errors import QueueUnavailableError
from ..core.models import QueueJob

log = structlog.get_logger(__name__)


@dataclass
class Claim:
    job: QueueJob
    payload: str  # chuỗi raw đã pop, dùng để LREM khỏi processing list
    deadline: float = 0.0


@dataclass
class ExpiredClaim:
    submission_id: str
    payload: str
    deadline: float


@contextmanager
def redis_guard(op: str) -> Iterator[None]:
    try:
        yield
    except redis.RedisError as e:
        raise QueueUnavailableError(f"redis {op} failed: {e}", op=op) from e


class JobQueue:
    def __init__(
        self,
        client: redis.Redis,
        name: str = "judge_queue",
        budget_fn: Optional[Callable[[QueueJob], float]] = None,
    ):
        self.client = client
        self.name = name
        self.processing_key = f"{name}:processing"
        self.claims_key = f"{name}:claims"
        self.workers_prefix = f"{name}:workers:"
        # số giây tối đa 1 job được giữ trước khi watchdog coi là treo
        self.budget_fn = budget_fn or (lambda job: 300.0)

    def enqueue(self, job: QueueJob) -> int:
        with redis_guard("lpush"):
            depth = self.client.lpush(self.name, job.to_json())
        log.info("job_enqueued", submission_id=job.submission_id, depth=depth)
        return int(depth)

    def dequeue(self, timeout_ms: int) -> Optional[Claim]:
        """Chờ tối đa timeout_ms; hết giờ mà queue rỗng -> None (không raise)."""
        # BRPOPLPUSH timeout=0 nghĩa là chờ vô hạn -> tối thiểu 1s
        timeout_s = max(1, math.ceil(timeout_ms / 1000))
        with redis_guard("brpoplpush"):
            raw = self.client.brpoplpush(self.name, self.processing_key, timeout=timeout_s)
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        try:
            job = QueueJob.from_json(raw)
        except (ValueError, TypeError, KeyError) as e:
            log.error("job_payload_invalid", error=str(e), payload=raw[:200])
            with redis_guard("lrem"):
                self.client.lrem(self.processing_key, 1, raw)
            return None

        claim = Claim(job=job, payload=raw, deadline=time.time() + self.budget_fn(job))
        self.track(claim)
        return claim

    def track(self, claim: Claim) -> None:
        entry = json.dumps({"deadline": claim.deadline, "payload": claim.payload})
        with redis_guard("hset"):
            self.client.hset(self.claims_key, claim.job.submission_id, entry)

    def renew(self, claim: Claim) -> None:
        """Gia hạn deadline trọn 1 budget mới (dùng khi worker retry lại job)."""
        claim.deadline = time.time() + self.budget_fn(claim.job)
        self.track(claim)

    def ack(self, claim: Claim) -> None:
        with redis_guard("ack"):
            pipe = self.client.pipeline()
            pipe.lrem(self.processing_key, 1, claim.payload)
            pipe.hdel(self.claims_key, claim.job.submission_id)
            pipe.execute()

    def release(self, expired: ExpiredClaim) -> None:
        with redis_guard("release"):
            pipe = self.client.pipeline()
            pipe.lrem(self.processing_key, 1, expired.payload)
            pipe.hdel(self.claims_key, expired.submission_id)
            pipe.execute()

    def expired_claims(self, now: Optional[float] = None) -> List[ExpiredClaim]:
        now = time.time() if now is None else now
        with redis_guard("hgetall"):
            entries = self.client.hgetall(self.claims_key)
        out: List[ExpiredClaim] = []
        for sid, raw in entries.items():
            if isinstance(sid, bytes):
                sid, raw = sid.decode("utf-8"), raw.decode("utf-8")
            try:
                data = json.loads(raw)
                deadline = float(data["deadline"])
            except (ValueError, KeyError, TypeError):
                log.warning("claim_entry_invalid", submission_id=sid)
                deadline, data = 0.0, {"payload": ""}
            if deadline <= now:
                out.append(ExpiredClaim(sid, data.get("payload", ""), deadline))
        return out

    def depth(self) -> int:
        with redis_guard("llen"):
            return int(self.client.llen(self.name))

    def processing(self) -> int:
        with redis_guard("llen"):
            return int(self.client.llen(self.processing_key))

    # ---------- worker heartbeats ----------

    def heartbeat(self, worker_id: str, ttl_s: float, state: str = "idle") -> None:
        with redis_guard("set"):
            self.client.set(self.workers_prefix + worker_id, state, px=max(1, int(ttl_s * 1000)))

    def drop_heartbeat(self, worker_id: str) -> None:
        with redis_guard("delete"):
            self.client.delete(self.workers_prefix + worker_id)

    def live_workers(self) -> Dict[str, str]:
        """worker_id -> state của mọi worker còn heartbeat (mọi process dùng chung Redis)."""
        out: Dict[str, str] = {}
        with redis_guard("scan"):
            for key in self.client.scan_iter(match=self.workers_prefix + "*"):
                state = self.client.get(key)
                if state is None:
                    continue
                if isinstance(key, bytes):
                    key, state = key.decode("utf-8"), state.decode("utf-8")
                out[key[len(self.workers_prefix):]] = state
        return out

    def healthy(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            log.warning("queue_unhealthy", error=str(e))
            return False
