from __future__ import annotations

import os
import socket
from typing import Optional

import redis
import structlog
from sqlalchemy.engine import Engine

from .core.db import make_engine
from .core.languages import LanguageRegistry
from .core.settings import Settings, get_settings
from .isolation.isolation import IsolationPipeline
from .isolation.profile import build_security_profile
from .runner.container_runner import ContainerRunner
from .screening.prescreen import PreScreener, load_rules
from .services.judge_service import JudgeService, claim_budget
from .services.queue import JobQueue
from .services.sandbox import SandboxEngine
from .services.state_machine import SubmissionStateMachine
from .services.storage import WorkspaceStorage
from .services.submission_store import SubmissionStore, TestcaseStore
from .services.worker import WorkerPool

log = structlog.get_logger(__name__)


def build_service(
    settings: Optional[Settings] = None,
    *,
    redis_client: Optional[redis.Redis] = None,
    db_engine: Optional[Engine] = None,
) -> JudgeService:
    """
    Dựng toàn bộ object graph. Security profile dựng đầu tiên:
    lỗi -> SecurityProfileError bay thẳng ra ngoài, không có chế độ chạy thiếu sandbox.
    """
    s = settings or get_settings()
    profile = build_security_profile(s)

    registry = LanguageRegistry.from_file(s.languages_file)
    screener = PreScreener(load_rules(s.prescreen_rules))

    pipeline = IsolationPipeline(profile, docker_bin=s.docker_bin, cpus=s.cpus)
    runner = ContainerRunner(
        pipeline,
        stdout_cap=s.stdout_cap_bytes,
        stderr_cap=s.stderr_cap_bytes,
        overhead_s=s.container_overhead_s,
    )
    sandbox = SandboxEngine(
        runner,
        WorkspaceStorage(s.jobs_dir),
        compile_timeout_s=s.compile_timeout_s,
        compile_memory_bytes=s.compile_memory_bytes,
    )

    engine = db_engine or make_engine(s.database_url)
    machine = SubmissionStateMachine(SubmissionStore(engine=engine))
    testcases = TestcaseStore(engine=engine)

    client = redis_client or redis.Redis.from_url(s.redis_url, decode_responses=True)
    queue = JobQueue(client, s.queue_name, budget_fn=claim_budget(s))

    log.info("judge_service_built", languages=registry.ids(), max_concurrent=s.max_concurrent)
    return JudgeService(s, registry, screener, sandbox, queue, machine, testcases)


def build_pool(service: JudgeService) -> WorkerPool:
    s = service.settings
    pool = WorkerPool(
        service.queue,
        service.process,
        size=s.max_concurrent,
        dequeue_timeout_ms=s.dequeue_timeout_ms,
        watchdog=service.reap_expired,
        watchdog_interval_s=s.watchdog_interval_s,
        heartbeat_interval_s=s.heartbeat_interval_s,
        health_check=service.sandbox.runner.ping,
        # id worker phải duy nhất trên cả cluster vì heartbeat dùng chung Redis
        name=f"judge-worker-{socket.gethostname()}-{os.getpid()}",
    )
    service.attach_pool(pool)
    return pool
