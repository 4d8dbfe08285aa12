from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .utils import utcnow


class SubmissionStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    ACCEPTED = "ACCEPTED"
    WRONG_ANSWER = "WRONG_ANSWER"
    TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    COMPILE_ERROR = "COMPILE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    SubmissionStatus.ACCEPTED,
    SubmissionStatus.WRONG_ANSWER,
    SubmissionStatus.TIME_LIMIT_EXCEEDED,
    SubmissionStatus.MEMORY_LIMIT_EXCEEDED,
    SubmissionStatus.RUNTIME_ERROR,
    SubmissionStatus.COMPILE_ERROR,
    SubmissionStatus.INTERNAL_ERROR,
    SubmissionStatus.REJECTED,
})


class Verdict(str, Enum):
    """Kết quả chấm của 1 testcase (tập con của SubmissionStatus)."""

    ACCEPTED = "ACCEPTED"
    WRONG_ANSWER = "WRONG_ANSWER"
    TIME_LIMIT_EXCEEDED = "TIME_LIMIT_EXCEEDED"
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    COMPILE_ERROR = "COMPILE_ERROR"

    def as_status(self) -> SubmissionStatus:
        return SubmissionStatus(self.value)


@dataclass(frozen=True)
class LanguageSpec:
    id: str
    image: str
    source_file_name: str
    run_cmd: str
    compile_cmd: Optional[str] = None
    needs_compilation: bool = False


@dataclass(frozen=True)
class Ulimits:
    max_processes: int
    max_open_files: int
    max_file_size_bytes: int
    cpu_seconds: int


@dataclass(frozen=True)
class SecurityProfile:
    allowed_syscalls: Tuple[str, ...]
    denied_syscalls: Tuple[str, ...]
    default_action: str
    seccomp_path: Path
    apparmor_profile: str
    dropped_capabilities: Tuple[str, ...]
    ulimits: Ulimits
    user: str = "1000:1000"
    tmpfs: str = "/tmp:size=50m,noexec,nosuid,nodev"
    no_new_privileges: bool = True


@dataclass(frozen=True)
class ResourceLimits:
    time_limit_ms: int
    memory_limit_bytes: int


@dataclass(frozen=True)
class Testcase:
    __test__ = False

    id: str
    input: str
    expected_output: str
    point: int = 0
    is_public: bool = False


@dataclass
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    wall_time_ms: int
    peak_memory_bytes: Optional[int] = None
    timed_out: bool = False
    oom_killed: bool = False
    compile_error: bool = False


@dataclass
class ExecutionSummary:
    exit_code: int
    wall_time_ms: int
    peak_memory_bytes: Optional[int]
    timed_out: bool
    oom_killed: bool
    stdout: str = ""
    stderr: str = ""


@dataclass
class TestcaseVerdict:
    __test__ = False

    testcase_id: str
    passed: bool
    points_awarded: int
    verdict: Verdict
    summary: ExecutionSummary

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["verdict"] = self.verdict.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TestcaseVerdict":
        return cls(
            testcase_id=d["testcase_id"],
            passed=bool(d["passed"]),
            points_awarded=int(d["points_awarded"]),
            verdict=Verdict(d["verdict"]),
            summary=ExecutionSummary(**d["summary"]),
        )


@dataclass
class Submission:
    id: str
    user_id: str
    problem_id: str
    language: str
    code: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    verdicts: List[TestcaseVerdict] = field(default_factory=list)
    total_score: int = 0
    reason: Optional[str] = None
    compile_output: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    judged_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    attempts: int = 0


@dataclass
class QueueJob:
    submission_id: str
    user_id: str
    problem_id: str
    code: str
    language: str
    testcases: List[Testcase]
    time_limit_ms: int
    memory_limit_bytes: int
    created_at: str
    attempt: int = 0

    @property
    def limits(self) -> ResourceLimits:
        return ResourceLimits(self.time_limit_ms, self.memory_limit_bytes)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "QueueJob":
        data = json.loads(raw)
        data["testcases"] = [Testcase(**tc) for tc in data.get("testcases", [])]
        return cls(**data)


@dataclass(frozen=True)
class Finding:
    rule_id: str
    message: str
    severity: str
    line: int


@dataclass
class QueueStatus:
    depth: int
    healthy: bool
    processing: int = 0
    workers_alive: int = 0
    active_executions: int = 0
