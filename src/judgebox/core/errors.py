"""Phân loại lỗi của judge core.

- CallerError: input sai (ngôn ngữ lạ, limits hỏng) -> từ chối trước khi vào queue.
- SecurityRejection: pre-screen bắt được pattern nguy hiểm -> REJECTED, không retry.
- InfrastructureError: docker/workspace/redis lỗi -> worker được retry có giới hạn.
- StateError: vi phạm state machine (đã terminal, claim trùng...).
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class JudgeError(Exception):
    code: str = "JUDGE_ERROR"
    status_code: int = 500
    detail: str = "judge error"

    def __init__(self, detail: Optional[str] = None, **context: Any) -> None:
        self.detail = detail or self.__class__.detail
        self.context: Dict[str, Any] = context
        super().__init__(self.detail)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.code, "detail": self.detail}
        if self.context:
            out["context"] = self.context
        return out


# ---- caller errors ----

class CallerError(JudgeError):
    code = "BAD_REQUEST"
    status_code = 400
    detail = "invalid request"


class UnknownLanguageError(CallerError):
    code = "UNSUPPORTED_LANGUAGE"
    detail = "unsupported language"


class InvalidLimitsError(CallerError):
    code = "INVALID_LIMITS"
    detail = "invalid resource limits"


class NoTestcasesError(CallerError):
    code = "NO_TESTCASES"
    detail = "no testcases found for this problem"


class SubmissionNotFoundError(JudgeError):
    code = "NOT_FOUND"
    status_code = 404
    detail = "submission not found"


class RateLimitedError(CallerError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    detail = "too many submissions, please try again later"


# ---- security ----

class SecurityRejection(JudgeError):
    code = "SECURITY_REJECTED"
    status_code = 400
    detail = "code contains blocked patterns"


class SecurityProfileError(JudgeError):
    """Không dựng/ghi được seccomp profile -> engine KHÔNG được khởi động."""

    code = "SECURITY_PROFILE_ERROR"
    detail = "security profile could not be built"


# ---- infrastructure (retryable) ----

class InfrastructureError(JudgeError):
    code = "INFRASTRUCTURE_ERROR"
    status_code = 503
    detail = "infrastructure failure"


class SandboxUnavailableError(InfrastructureError):
    code = "SANDBOX_UNAVAILABLE"
    detail = "container runtime is unreachable"


class WorkspaceError(InfrastructureError):
    code = "WORKSPACE_ERROR"
    detail = "workspace could not be prepared"


class QueueUnavailableError(InfrastructureError):
    code = "QUEUE_UNAVAILABLE"
    detail = "queue transport is unreachable"


# ---- state machine ----

class StateError(JudgeError):
    code = "STATE_ERROR"
    status_code = 409
    detail = "illegal submission state transition"


class IllegalTransitionError(StateError):
    code = "ILLEGAL_TRANSITION"


class SubmissionFinalizedError(StateError):
    code = "SUBMISSION_FINALIZED"
    detail = "submission is already in a terminal state"
