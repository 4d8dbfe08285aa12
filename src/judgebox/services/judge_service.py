from __future__ import annotations

import time
from dataclasses import asdict
from typing import Callable, Dict, Optional

import structlog

from ..core.errors import (
    InfrastructureError,
    InvalidLimitsError,
    NoTestcasesError,
    QueueUnavailableError,
    SecurityRejection,
    StateError,
    SubmissionNotFoundError,
)
from ..core.languages import LanguageRegistry
from ..core.models import (
    LanguageSpec,
    QueueJob,
    QueueStatus,
    ResourceLimits,
    Submission,
)
from ..core.settings import Settings
from ..core.utils import truncate, utcnow
from ..screening.prescreen import PreScreener
from .judge import aggregate, judge
from .queue import Claim, JobQueue
from .sandbox import SandboxEngine, SandboxReport
from .state_machine import SubmissionStateMachine
from .submission_store import TestcaseStore
from .worker import WorkerPool

log = structlog.get_logger(__name__)

WATCHDOG_REASON = "WATCHDOG_TIMEOUT"


def claim_budget(settings: Settings) -> Callable[[QueueJob], float]:
    """
    Số giây 1 claim được giữ trước khi watchdog coi là treo.

    Mỗi container (compile và từng testcase) được host chờ tối đa limit + container_overhead_s,
    nên budget phải phủ đúng các deadline đó, cộng thêm watchdog_overhead_s.
    """
    overhead = settings.container_overhead_s

    def budget(job: QueueJob) -> float:
        per_case = job.time_limit_ms / 1000.0 + overhead
        return (
            per_case * max(1, len(job.testcases))
            + settings.compile_timeout_s + overhead
            + settings.watchdog_overhead_s
        )

    return budget


class JudgeService:
    """
    Orchestrator: ghép Registry + PreScreener + Queue + SandboxEngine + Judge + State machine.

    Phía API gọi submit/get_status/get_queue_status; phía worker gọi process/reap_expired.
    """

    def __init__(
        self,
        settings: Settings,
        registry: LanguageRegistry,
        screener: PreScreener,
        sandbox: SandboxEngine,
        queue: JobQueue,
        machine: SubmissionStateMachine,
        testcases: TestcaseStore,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.registry = registry
        self.screener = screener
        self.sandbox = sandbox
        self.queue = queue
        self.machine = machine
        self.testcases = testcases
        self.pool: Optional[WorkerPool] = None
        self._sleep = sleep

    def attach_pool(self, pool: WorkerPool) -> None:
        self.pool = pool

    # ---------- intake ----------

    def resolve_limits(self, limits: Optional[ResourceLimits]) -> ResourceLimits:
        s = self.settings
        if limits is None:
            return ResourceLimits(s.default_time_limit_ms, s.default_memory_bytes)
        if limits.time_limit_ms <= 0 or limits.memory_limit_bytes <= 0:
            raise InvalidLimitsError(
                time_limit_ms=limits.time_limit_ms, memory_limit_bytes=limits.memory_limit_bytes
            )
        # clamp theo trần của platform
        return ResourceLimits(
            time_limit_ms=min(limits.time_limit_ms, s.max_time_limit_ms),
            memory_limit_bytes=min(limits.memory_limit_bytes, s.max_memory_bytes),
        )

    def submit(self, user_id: str, problem_id: str, language: str, code: str,
               limits: Optional[ResourceLimits] = None) -> str:
        # lỗi của caller -> raise trước khi tạo submission
        lang = self.registry.resolve(language)
        lim = self.resolve_limits(limits)
        testcases = self.testcases.get_testcases(problem_id)
        if not testcases:
            raise NoTestcasesError(problem_id=problem_id)

        sub = self.machine.create(user_id, problem_id, lang.id, code)
        slog = log.bind(submission_id=sub.id, user_id=user_id, language=lang.id)

        findings = self.screener.scan(code, lang.id)
        if findings:
            slog.warning(
                "security_event",
                event="MALICIOUS_CODE_DETECTED",
                problem_id=problem_id,
                findings=[asdict(f) for f in findings],
            )
            self.machine.reject(sub.id, reason=SecurityRejection.code)
            return sub.id

        self.machine.mark_queued(sub.id)
        job = QueueJob(
            submission_id=sub.id,
            user_id=user_id,
            problem_id=problem_id,
            code=code,
            language=lang.id,
            testcases=testcases,
            time_limit_ms=lim.time_limit_ms,
            memory_limit_bytes=lim.memory_limit_bytes,
            created_at=utcnow().isoformat(),
        )
        try:
            self.queue.enqueue(job)
        except QueueUnavailableError as e:
            self.machine.fail(sub.id, reason=e.code)
            raise
        slog.info("submission_queued", problem_id=problem_id, testcases=len(testcases))
        return sub.id

    def get_status(self, submission_id: str) -> Submission:
        sub = self.machine.store.find_by_id(submission_id)
        if sub is None:
            raise SubmissionNotFoundError(submission_id=submission_id)
        return sub

    def get_queue_status(self) -> QueueStatus:
        healthy = self.queue.healthy()
        depth = processing = 0
        if healthy:
            try:
                depth = self.queue.depth()
                processing = self.queue.processing()
            except QueueUnavailableError:
                healthy = False
        # đếm theo heartbeat trên Redis: API process không có pool vẫn thấy worker của cả cluster
        workers: Dict[str, str] = {}
        if healthy:
            try:
                workers = self.queue.live_workers()
            except QueueUnavailableError:
                healthy = False
        workers_alive = len(workers)
        active = sum(1 for state in workers.values() if state == "busy")
        # pool trong process này chết hết thì không chờ TTL heartbeat hết hạn
        if workers_alive == 0 or (self.pool is not None and self.pool.workers_alive == 0):
            healthy = False
        return QueueStatus(
            depth=depth,
            healthy=healthy,
            processing=processing,
            workers_alive=workers_alive,
            active_executions=active,
        )

    # ---------- worker side ----------

    def process(self, claim: Claim, worker_id: str) -> None:
        """Xử lý 1 job đã dequeue. Không bao giờ raise ra ngoài; luôn ack claim."""
        job = claim.job
        sid = job.submission_id
        wlog = log.bind(submission_id=sid, worker_id=worker_id)
        try:
            if self.machine.claim(sid, worker_id) is None:
                return
            lang = self.registry.resolve(job.language)
            report = self._execute_with_retry(claim, lang)
            self._record(job, report)
        except StateError as e:
            wlog.warning("submission_already_final", error=e.code)
        except InfrastructureError as e:
            wlog.error("worker_job_failed", error=e.code, detail=e.detail)
            self._fail(sid, e.code)
        except Exception as e:
            wlog.exception("worker_job_failed", error=type(e).__name__)
            self._fail(sid, f"INTERNAL_ERROR: {type(e).__name__}")
        finally:
            try:
                self.queue.ack(claim)
            except QueueUnavailableError as e:
                wlog.error("queue_ack_failed", error=str(e))

    def _execute_with_retry(self, claim: Claim, lang: LanguageSpec) -> SandboxReport:
        job = claim.job
        attempt = 0
        while True:
            attempt += 1
            self.machine.record_attempt(job.submission_id, attempt)
            try:
                return self.sandbox.execute(job.submission_id, job.code, lang, job.limits, job.testcases)
            except InfrastructureError as e:
                # lỗi hạ tầng mới retry; kết quả chấm thì không bao giờ
                if attempt > self.settings.max_retries:
                    raise
                log.warning("sandbox_retry", submission_id=job.submission_id, attempt=attempt,
                            error=e.code, detail=e.detail)
                self._sleep(self.settings.retry_delay_s * attempt)
                self.queue.renew(claim)

    def _record(self, job: QueueJob, report: SandboxReport) -> None:
        if report.compile_error:
            cr = report.compile_result
            output = "\n".join(x for x in (cr.stderr, cr.stdout) if x)
            status, score = aggregate([], compile_error=True)
            self.machine.finalize(job.submission_id, status, [], score,
                                  compile_output=truncate(output, self.settings.excerpt_chars))
            return

        verdicts = [judge(res, tc, self.settings.excerpt_chars) for tc, res in report.results]
        status, score = aggregate(verdicts)
        self.machine.finalize(job.submission_id, status, verdicts, score)

    def _fail(self, submission_id: str, reason: str) -> None:
        try:
            self.machine.fail(submission_id, reason)
        except (StateError, SubmissionNotFoundError) as e:
            # watchdog hoặc worker khác đã kết thúc submission này
            log.warning("submission_fail_skipped", submission_id=submission_id, error=e.code)

    def reap_expired(self) -> int:
        """Watchdog: claim quá deadline -> INTERNAL_ERROR và gỡ khỏi processing list."""
        reaped = 0
        for exp in self.queue.expired_claims():
            self._fail(exp.submission_id, WATCHDOG_REASON)
            self.queue.release(exp)
            reaped += 1
        return reaped
