from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional

import structlog

from ..core.errors import IllegalTransitionError, StateError, SubmissionNotFoundError
from ..core.models import Submission, SubmissionStatus as S, TestcaseVerdict
from ..core.utils import new_submission_id, utcnow
from .submission_store import SubmissionStore

log = structlog.get_logger(__name__)

JUDGED: FrozenSet[S] = frozenset({
    S.ACCEPTED, S.WRONG_ANSWER, S.TIME_LIMIT_EXCEEDED, S.MEMORY_LIMIT_EXCEEDED,
    S.RUNTIME_ERROR, S.COMPILE_ERROR,
})

# from -> các đích hợp lệ; terminal không có cạnh ra
TRANSITIONS: Dict[S, FrozenSet[S]] = {
    S.PENDING: frozenset({S.QUEUED, S.REJECTED, S.INTERNAL_ERROR}),
    S.QUEUED: frozenset({S.RUNNING, S.INTERNAL_ERROR}),
    S.RUNNING: JUDGED | {S.INTERNAL_ERROR},
}


def sources_for(target: S) -> List[S]:
    return [src for src, dsts in TRANSITIONS.items() if target in dsts]


class SubmissionStateMachine:
    """
    Mọi thay đổi status đi qua đây; store thực hiện bằng UPDATE có điều kiện
    nên 2 worker không thể cùng claim 1 submission.
    """

    def __init__(self, store: SubmissionStore):
        self.store = store

    def create(self, user_id: str, problem_id: str, language: str, code: str) -> Submission:
        sub = Submission(
            id=new_submission_id(),
            user_id=user_id,
            problem_id=problem_id,
            language=language,
            code=code,
            status=S.PENDING,
            created_at=utcnow(),
        )
        return self.store.create(sub)

    def transition(self, submission_id: str, target: S, **fields) -> Submission:
        sources = sources_for(target)
        if not sources:
            raise IllegalTransitionError(f"no transition leads to {target.value}", submission_id=submission_id)
        sub = self.store.transition(submission_id, sources, target, **fields)
        log.info("submission_transition", submission_id=submission_id, status=target.value)
        return sub

    def mark_queued(self, submission_id: str) -> Submission:
        return self.transition(submission_id, S.QUEUED)

    def reject(self, submission_id: str, reason: str) -> Submission:
        return self.transition(submission_id, S.REJECTED, reason=reason, judged_at=utcnow())

    def claim(self, submission_id: str, worker_id: str) -> Optional[Submission]:
        """QUEUED -> RUNNING; None nếu worker khác đã claim hoặc đã terminal."""
        try:
            return self.store.transition(
                submission_id, [S.QUEUED], S.RUNNING,
                worker_id=worker_id, started_at=utcnow(),
            )
        except (StateError, SubmissionNotFoundError) as e:
            log.warning("submission_claim_lost", submission_id=submission_id,
                        worker_id=worker_id, error=e.code)
            return None

    def record_attempt(self, submission_id: str, attempts: int) -> Submission:
        return self.store.update(submission_id, attempts=attempts)

    def finalize(self, submission_id: str, status: S, verdicts: List[TestcaseVerdict],
                 total_score: int, compile_output: Optional[str] = None) -> Submission:
        if status not in JUDGED:
            raise IllegalTransitionError(f"{status.value} is not a judged outcome", submission_id=submission_id)
        sub = self.store.transition(
            submission_id, [S.RUNNING], status,
            verdicts=verdicts,
            total_score=total_score,
            compile_output=compile_output,
            judged_at=utcnow(),
        )
        log.info("submission_judged", submission_id=submission_id, status=status.value, score=total_score)
        return sub

    def fail(self, submission_id: str, reason: str) -> Submission:
        sub = self.store.transition(
            submission_id, sources_for(S.INTERNAL_ERROR), S.INTERNAL_ERROR,
            reason=reason, judged_at=utcnow(),
        )
        log.error("submission_failed", submission_id=submission_id, reason=reason)
        return sub
