"""
Chấm điểm: so output đã chuẩn hoá, phân loại verdict từng testcase, gộp headline status.

Headline = verdict khác ACCEPTED đầu tiên theo thứ tự testcase; COMPILE_ERROR chặn trước tất cả.
Mọi verdict từng testcase vẫn được giữ để hiển thị điểm từng phần.
"""
from __future__ import annotations

from typing import Iterable, Tuple

from ..core.models import (
    ExecutionResult,
    ExecutionSummary,
    SubmissionStatus,
    Testcase,
    TestcaseVerdict,
    Verdict,
)
from ..core.utils import truncate

def normalize_output(text: str) -> str:
    """rstrip từng dòng, rồi bỏ đúng 1 dòng rỗng cuối (1 newline cuối là tuỳ chọn)."""
    lines = [ln.rstrip() for ln in (text or "").split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def outputs_match(actual: str, expected: str) -> bool:
    return normalize_output(actual) == normalize_output(expected)


def classify(result: ExecutionResult, expected_output: str) -> Verdict:
    if result.compile_error:
        return Verdict.COMPILE_ERROR
    if result.oom_killed:
        return Verdict.MEMORY_LIMIT_EXCEEDED
    if result.timed_out:
        return Verdict.TIME_LIMIT_EXCEEDED
    if result.exit_code != 0:
        return Verdict.RUNTIME_ERROR
    if not outputs_match(result.stdout, expected_output):
        return Verdict.WRONG_ANSWER
    return Verdict.ACCEPTED


def summarize(result: ExecutionResult, excerpt_chars: int = 2000) -> ExecutionSummary:
    return ExecutionSummary(
        exit_code=result.exit_code,
        wall_time_ms=result.wall_time_ms,
        peak_memory_bytes=result.peak_memory_bytes,
        timed_out=result.timed_out,
        oom_killed=result.oom_killed,
        stdout=truncate(result.stdout or "", excerpt_chars),
        stderr=truncate(result.stderr or "", excerpt_chars),
    )


def judge(result: ExecutionResult, testcase: Testcase, excerpt_chars: int = 2000) -> TestcaseVerdict:
    verdict = classify(result, testcase.expected_output)
    passed = verdict is Verdict.ACCEPTED
    return TestcaseVerdict(
        testcase_id=testcase.id,
        passed=passed,
        points_awarded=testcase.point if passed else 0,
        verdict=verdict,
        summary=summarize(result, excerpt_chars),
    )


def aggregate(verdicts: Iterable[TestcaseVerdict], compile_error: bool = False) -> Tuple[SubmissionStatus, int]:
    """-> (headline status, total_score = tổng points_awarded)."""
    verdicts = list(verdicts)
    if compile_error:
        return SubmissionStatus.COMPILE_ERROR, 0
    total = sum(v.points_awarded for v in verdicts)
    for v in verdicts:
        if v.verdict is not Verdict.ACCEPTED:
            return v.verdict.as_status(), total
    return SubmissionStatus.ACCEPTED, total
