from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import structlog

from ..core.models import ExecutionResult, LanguageSpec, ResourceLimits, Testcase
from ..runner.container_runner import ContainerRunner
from .storage import WorkspaceStorage

log = structlog.get_logger(__name__)


@dataclass
class SandboxReport:
    """Kết quả execute cả job: compile (nếu có) + 1 ExecutionResult cho mỗi testcase."""

    compile_result: Optional[ExecutionResult] = None
    results: List[Tuple[Testcase, ExecutionResult]] = field(default_factory=list)

    @property
    def compile_error(self) -> bool:
        return bool(self.compile_result and self.compile_result.compile_error)


def _container_name(submission_id: str, tag: str) -> str:
    safe = "".join(c if c.isalnum() or c in "-_" else "-" for c in tag)[:24]
    return f"judge-{submission_id[:12]}-{safe}-{uuid.uuid4().hex[:8]}"


class SandboxEngine:
    """
    Orchestrator cho 1 job: workspace tạm -> compile (tuỳ ngôn ngữ) -> mỗi testcase 1 container mới.
    Workspace bị xoá và container bị rm trên mọi nhánh thoát.
    """

    def __init__(
        self,
        runner: ContainerRunner,
        storage: WorkspaceStorage,
        *,
        compile_timeout_s: int = 10,
        compile_memory_bytes: int = 512 * 1024 * 1024,
    ):
        self.runner = runner
        self.storage = storage
        self.compile_timeout_s = compile_timeout_s
        self.compile_memory_bytes = compile_memory_bytes

    def _compile(self, submission_id: str, ws: Path, lang: LanguageSpec) -> ExecutionResult:
        # compile timeout cố định, không phụ thuộc time limit của đề
        res = self.runner.run(
            name=_container_name(submission_id, "compile"),
            image=lang.image,
            workspace=ws,
            command=lang.compile_cmd or "",
            stdin="",
            time_limit_ms=self.compile_timeout_s * 1000,
            memory_bytes=self.compile_memory_bytes,
            writable_workspace=True,
        )
        res.compile_error = res.exit_code != 0 or res.timed_out or res.oom_killed
        if res.compile_error:
            log.info("compile_failed", submission_id=submission_id, lang=lang.id,
                     rc=res.exit_code, timed_out=res.timed_out)
        return res

    def _run_one(self, submission_id: str, ws: Path, lang: LanguageSpec,
                 limits: ResourceLimits, stdin: str, tag: str) -> ExecutionResult:
        return self.runner.run(
            name=_container_name(submission_id, tag),
            image=lang.image,
            workspace=ws,
            command=lang.run_cmd,
            stdin=stdin,
            time_limit_ms=limits.time_limit_ms,
            memory_bytes=limits.memory_limit_bytes,
        )

    def run(self, code: str, lang: LanguageSpec, limits: ResourceLimits, stdin: str = "",
            submission_id: Optional[str] = None) -> ExecutionResult:
        """Chạy code với 1 input. Compile lỗi -> trả về chính kết quả compile (compile_error=True)."""
        submission_id = submission_id or uuid.uuid4().hex
        with self.storage.workspace(submission_id, code, lang) as ws:
            if lang.needs_compilation:
                compiled = self._compile(submission_id, ws, lang)
                if compiled.compile_error:
                    return compiled
            return self._run_one(submission_id, ws, lang, limits, stdin, tag="run")

    def execute(self, submission_id: str, code: str, lang: LanguageSpec,
                limits: ResourceLimits, testcases: Sequence[Testcase]) -> SandboxReport:
        report = SandboxReport()
        with self.storage.workspace(submission_id, code, lang) as ws:
            if lang.needs_compilation:
                report.compile_result = self._compile(submission_id, ws, lang)
                if report.compile_error:
                    return report
            for tc in testcases:
                res = self._run_one(submission_id, ws, lang, limits, tc.input, tag=f"tc{tc.id}")
                report.results.append((tc, res))
                log.debug("testcase_executed", submission_id=submission_id, testcase_id=tc.id,
                          rc=res.exit_code, wall_ms=res.wall_time_ms,
                          timed_out=res.timed_out, oom_killed=res.oom_killed)
        return report
