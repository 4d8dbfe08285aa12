from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional

import fakeredis
import pytest

from judgebox.core.db import make_engine
from judgebox.core.languages import LanguageRegistry
from judgebox.core.models import (
    ExecutionResult,
    QueueJob,
    SecurityProfile,
    Testcase,
    Ulimits,
)
from judgebox.core.settings import Settings
from judgebox.isolation.isolation import IsolationPipeline
from judgebox.screening.prescreen import PreScreener
from judgebox.services.judge_service import JudgeService, claim_budget
from judgebox.services.queue import JobQueue
from judgebox.services.sandbox import SandboxReport
from judgebox.services.state_machine import SubmissionStateMachine
from judgebox.services.submission_store import SubmissionStore, TestcaseStore


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        jobs_dir=tmp_path / "jobs",
        security_dir=tmp_path / "security",
        seccomp_policy=tmp_path / "missing-seccomp.yaml",
        languages_file=tmp_path / "missing-languages.yaml",
        prescreen_rules=tmp_path / "missing-prescreen.yaml",
        database_url="sqlite://",
        max_retries=2,
        retry_delay_s=0,
        max_time_limit_ms=5000,
    )


@pytest.fixture
def profile(tmp_path: Path) -> SecurityProfile:
    return SecurityProfile(
        allowed_syscalls=("read", "write"),
        denied_syscalls=("ptrace",),
        default_action="SCMP_ACT_ERRNO",
        seccomp_path=tmp_path / "seccomp.json",
        apparmor_profile="docker-default",
        dropped_capabilities=("ALL",),
        ulimits=Ulimits(max_processes=64, max_open_files=1024,
                        max_file_size_bytes=1048576, cpu_seconds=30),
    )


@pytest.fixture
def pipeline(profile: SecurityProfile) -> IsolationPipeline:
    return IsolationPipeline(profile)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def db_engine():
    return make_engine("sqlite://")


@pytest.fixture
def store(db_engine) -> SubmissionStore:
    return SubmissionStore(engine=db_engine)


@pytest.fixture
def machine(store: SubmissionStore) -> SubmissionStateMachine:
    return SubmissionStateMachine(store)


@pytest.fixture
def testcase_store(db_engine) -> TestcaseStore:
    return TestcaseStore(engine=db_engine)


def ok(stdout: str = "", **kw) -> ExecutionResult:
    return ExecutionResult(stdout=stdout, stderr=kw.pop("stderr", ""),
                           exit_code=kw.pop("exit_code", 0), wall_time_ms=kw.pop("wall_time_ms", 5), **kw)


class FakeSandbox:
    """Thay SandboxEngine: mỗi lần execute lấy 1 phần tử trong `script` (exception thì raise)."""

    def __init__(self, script: Optional[List] = None,
                 per_case: Optional[Callable[[Testcase], ExecutionResult]] = None):
        self.script = list(script or [])
        self.per_case = per_case
        self.calls = 0

    def execute(self, submission_id, code, lang, limits, testcases) -> SandboxReport:
        self.calls += 1
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, SandboxReport):
                return item
        fn = self.per_case or (lambda tc: ok(tc.expected_output))
        return SandboxReport(results=[(tc, fn(tc)) for tc in testcases])


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def service(settings, redis_client, machine, testcase_store, fake_sandbox) -> JudgeService:
    testcase_store.add_testcase("sum", "1 2\n", "3\n", point=10, is_public=True)
    testcase_store.add_testcase("sum", "5 7\n", "12\n", point=10)
    return JudgeService(
        settings,
        LanguageRegistry.from_file(None),
        PreScreener(),
        fake_sandbox,
        JobQueue(redis_client, settings.queue_name, budget_fn=claim_budget(settings)),
        machine,
        testcase_store,
        sleep=lambda _s: None,
    )


def make_job(submission_id: str = "sub-1", **kw) -> QueueJob:
    defaults = dict(
        submission_id=submission_id,
        user_id="u1",
        problem_id="sum",
        code="print(3)",
        language="python",
        testcases=[Testcase(id="1", input="", expected_output="3", point=10)],
        time_limit_ms=1000,
        memory_limit_bytes=128 * 1024 * 1024,
        created_at="2024-01-01T00:00:00",
    )
    defaults.update(kw)
    return QueueJob(**defaults)
