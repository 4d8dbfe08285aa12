"""
Kịch bản chạy thật trong Docker. Cần docker daemon + JUDGE_DOCKER_TESTS=1, và các image
frolvlad/alpine-gxx, python:3.11-slim đã pull sẵn.
"""
import os
import shutil
from pathlib import Path

import pytest

from judgebox.core.languages import LanguageRegistry
from judgebox.core.models import ResourceLimits, SubmissionStatus as S, Testcase, Verdict
from judgebox.isolation.isolation import IsolationPipeline
from judgebox.isolation.profile import build_security_profile
from judgebox.runner.container_runner import ContainerRunner
from judgebox.screening.prescreen import PreScreener
from judgebox.services.judge import classify
from judgebox.services.judge_service import JudgeService, claim_budget
from judgebox.services.queue import JobQueue
from judgebox.services.sandbox import SandboxEngine
from judgebox.services.storage import WorkspaceStorage

pytestmark = [
    pytest.mark.docker,
    pytest.mark.skipif(
        shutil.which("docker") is None or os.environ.get("JUDGE_DOCKER_TESTS") != "1",
        reason="needs docker and JUDGE_DOCKER_TESTS=1",
    ),
]

PAYLOADS = Path(__file__).parent / "payloads"

SUM_CPP = """#include <iostream>
int main() { long long a, b; std::cin >> a >> b; std::cout << a + b << "\\n"; return 0; }
"""
CRASH_CPP = """#include <cstdlib>
int main() { std::abort(); }
"""
FORK_BOMB_CPP = """#include <unistd.h>
int main() { while (1) fork(); }
"""


@pytest.fixture
def engine(settings):
    profile = build_security_profile(settings)
    runner = ContainerRunner(IsolationPipeline(profile), overhead_s=settings.container_overhead_s)
    return SandboxEngine(runner, WorkspaceStorage(settings.jobs_dir),
                         compile_timeout_s=30, compile_memory_bytes=settings.compile_memory_bytes)


@pytest.fixture
def live_service(settings, engine, redis_client, machine, testcase_store):
    testcase_store.add_testcase("sum", "1 2\n", "3\n", point=10)
    testcase_store.add_testcase("sum", "40 2\n", "42\n", point=10)
    return JudgeService(
        settings, LanguageRegistry.from_file(None), PreScreener(), engine,
        JobQueue(redis_client, budget_fn=claim_budget(settings)), machine, testcase_store,
    )


def _judge_once(service, language, code, limits=None):
    sid = service.submit("u1", "sum", language, code, limits)
    claim = service.queue.dequeue(1000)
    if claim is not None:
        service.process(claim, "it-worker")
    return service.get_status(sid)


def test_cpp_sum_accepted(live_service):
    sub = _judge_once(live_service, "cpp", SUM_CPP)
    assert sub.status is S.ACCEPTED and sub.total_score == 20


def test_cpp_crash_is_runtime_error(live_service):
    sub = _judge_once(live_service, "cpp", CRASH_CPP)
    assert sub.status is S.RUNTIME_ERROR and sub.total_score == 0


def test_cpp_fork_bomb_never_accepted(live_service, engine):
    sub = _judge_once(live_service, "cpp", FORK_BOMB_CPP)
    assert sub.status is not S.ACCEPTED

    # bỏ qua pre-screen: pids limit vẫn chặn được
    res = engine.run(FORK_BOMB_CPP, LanguageRegistry.from_file(None).resolve("cpp"),
                     ResourceLimits(1000, 64 * 1024 * 1024))
    assert classify(res, "") is not Verdict.ACCEPTED


def test_python_infinite_loop_times_out(live_service):
    sub = _judge_once(live_service, "python", "while True:\n    pass\n", ResourceLimits(1000, 128 * 1024 * 1024))
    assert sub.status is S.TIME_LIMIT_EXCEEDED
    assert all(v.summary.timed_out for v in sub.verdicts)


def test_memory_hog_is_mle(engine):
    code = (PAYLOADS / "memory_hog.py").read_text(encoding="utf-8")
    res = engine.run(code, LanguageRegistry.from_file(None).resolve("python"),
                     ResourceLimits(5000, 64 * 1024 * 1024))
    assert res.oom_killed
    assert classify(res, "") is Verdict.MEMORY_LIMIT_EXCEEDED


def test_process_storm_hits_pids_limit(engine):
    code = (PAYLOADS / "process_storm.py").read_text(encoding="utf-8")
    res = engine.run(code, LanguageRegistry.from_file(None).resolve("python"),
                     ResourceLimits(5000, 256 * 1024 * 1024))
    assert classify(res, "") is not Verdict.ACCEPTED


def test_cpu_work_within_limit(engine):
    code = (PAYLOADS / "cpu_work.py").read_text(encoding="utf-8")
    res = engine.run(code, LanguageRegistry.from_file(None).resolve("python"),
                     ResourceLimits(5000, 128 * 1024 * 1024), stdin="20000\n")
    assert res.exit_code == 0 and not res.timed_out
    assert int(res.stdout.strip()) > 0


def test_network_is_unreachable(engine):
    code = "import socket\nsocket.create_connection(('1.1.1.1', 53), timeout=1)\n"
    res = engine.run(code, LanguageRegistry.from_file(None).resolve("python"),
                     ResourceLimits(3000, 128 * 1024 * 1024))
    assert res.exit_code != 0


def test_workspace_is_read_only_at_run_time(engine):
    code = "open('/work/x.txt', 'w').write('x')\n"
    res = engine.run(code, LanguageRegistry.from_file(None).resolve("python"),
                     ResourceLimits(3000, 128 * 1024 * 1024))
    assert res.exit_code != 0
