import subprocess
from typing import List

import pytest

from judgebox.core.errors import SandboxUnavailableError
from judgebox.runner.container_runner import ContainerRunner


class Recorder:
    def __init__(self, inspect_out: str = "false"):
        self.popen_argv: List[List[str]] = []
        self.docker_calls: List[List[str]] = []
        self.stdin: List[bytes] = []
        self.inspect_out = inspect_out

    def run(self, argv, **kw):
        self.docker_calls.append(list(argv))
        out = self.inspect_out + "\n" if argv[1] == "inspect" else ""
        return subprocess.CompletedProcess(argv, 0, stdout=out, stderr="")

    def verbs(self):
        return [c[1] for c in self.docker_calls]


def fake_popen(rec: Recorder, rc=0, out=b"", err=b"", hang=False):
    class FakePopen:
        def __init__(self, argv, **kw):
            rec.popen_argv.append(list(argv))
            self.returncode = None
            self._killed = False

        def communicate(self, input=None, timeout=None):
            if input is not None:
                rec.stdin.append(input)
            if hang and not self._killed:
                raise subprocess.TimeoutExpired("docker", timeout)
            self.returncode = -9 if self._killed else rc
            return (b"", b"") if self._killed else (out, err)

        def kill(self):
            self._killed = True

    return FakePopen


@pytest.fixture
def rec(monkeypatch):
    r = Recorder()
    monkeypatch.setattr(subprocess, "run", r.run)
    return r


def _run(runner, tmp_path, **kw):
    params = dict(name="judge-t", image="python:3.11-slim", workspace=tmp_path,
                  command="python3 -u /work/main.py", stdin="1 2\n",
                  time_limit_ms=1000, memory_bytes=64 * 1024 * 1024)
    params.update(kw)
    return runner.run(**params)


def test_successful_run_captures_output_and_removes_container(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, rc=0, out=b"3\n"))
    res = _run(ContainerRunner(pipeline), tmp_path)
    assert res.stdout == "3\n" and res.exit_code == 0
    assert not res.timed_out and not res.oom_killed
    assert rec.stdin == [b"1 2\n"]
    assert rec.popen_argv[0][:2] == ["docker", "run"]
    assert ["docker", "rm", "-f", "judge-t"] in rec.docker_calls


def test_timeout_wrapper_exit_code_means_timed_out(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, rc=124))
    res = _run(ContainerRunner(pipeline), tmp_path)
    assert res.timed_out and not res.oom_killed


def test_host_deadline_kills_container(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, hang=True))
    res = _run(ContainerRunner(pipeline, overhead_s=0.01), tmp_path)
    assert res.timed_out
    assert "kill" in rec.verbs() and rec.verbs()[-1] == "rm"


def test_oom_reported_by_runtime(monkeypatch, pipeline, tmp_path):
    r = Recorder(inspect_out="true")
    monkeypatch.setattr(subprocess, "run", r.run)
    monkeypatch.setattr(subprocess, "Popen", fake_popen(r, rc=137))
    res = _run(ContainerRunner(pipeline), tmp_path)
    assert res.oom_killed and not res.timed_out
    assert r.verbs() == ["inspect", "rm"]


def test_runtime_error_keeps_stderr(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, rc=1, err=b"Traceback: boom"))
    res = _run(ContainerRunner(pipeline), tmp_path)
    assert res.exit_code == 1 and "boom" in res.stderr
    assert not res.timed_out and not res.oom_killed


def test_output_is_capped(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, out=b"y" * 500))
    res = _run(ContainerRunner(pipeline, stdout_cap=100), tmp_path)
    assert res.stdout.startswith("y" * 100)
    assert "400 bytes omitted" in res.stdout


def test_docker_error_raises_unavailable_and_still_cleans_up(monkeypatch, rec, pipeline, tmp_path):
    monkeypatch.setattr(subprocess, "Popen", fake_popen(rec, rc=125, err=b"Unable to find image"))
    with pytest.raises(SandboxUnavailableError):
        _run(ContainerRunner(pipeline), tmp_path)
    assert rec.verbs() == ["rm"]


def test_missing_docker_binary(monkeypatch, rec, pipeline, tmp_path):
    def boom(*a, **kw):
        raise FileNotFoundError("docker")

    monkeypatch.setattr(subprocess, "Popen", boom)
    with pytest.raises(SandboxUnavailableError):
        _run(ContainerRunner(pipeline), tmp_path)


def _state(run_ms: int, oom: str = "false") -> str:
    return f"{oom}|2024-05-01T10:00:00.000000000Z|2024-05-01T10:00:{run_ms // 1000:02d}.{run_ms % 1000:03d}000000Z"


def _with_state(monkeypatch, state: str, rc: int) -> Recorder:
    r = Recorder(inspect_out=state)
    monkeypatch.setattr(subprocess, "run", r.run)
    monkeypatch.setattr(subprocess, "Popen", fake_popen(r, rc=rc))
    return r


def test_program_exiting_124_early_is_not_a_timeout(monkeypatch, pipeline, tmp_path):
    _with_state(monkeypatch, _state(40), rc=124)
    res = _run(ContainerRunner(pipeline), tmp_path, time_limit_ms=1000)
    assert not res.timed_out and res.exit_code == 124


def test_timeout_judged_by_in_container_runtime(monkeypatch, pipeline, tmp_path):
    _with_state(monkeypatch, _state(1003), rc=124)
    res = _run(ContainerRunner(pipeline), tmp_path, time_limit_ms=1000)
    assert res.timed_out

    # SIGKILL trước limit (vd. tự kill) không phải TLE dù wall time có cả khởi động container
    _with_state(monkeypatch, _state(300), rc=137)
    res = _run(ContainerRunner(pipeline), tmp_path, time_limit_ms=1000)
    assert not res.timed_out and res.exit_code == 137

    _with_state(monkeypatch, _state(2001), rc=137)
    res = _run(ContainerRunner(pipeline), tmp_path, time_limit_ms=2000)
    assert res.timed_out


def test_oom_wins_over_runtime_clock(monkeypatch, pipeline, tmp_path):
    _with_state(monkeypatch, _state(1500, oom="true"), rc=137)
    res = _run(ContainerRunner(pipeline), tmp_path, time_limit_ms=1000)
    assert res.oom_killed and not res.timed_out


def test_ping_asks_docker_daemon(monkeypatch, rec, pipeline):
    assert ContainerRunner(pipeline).ping()
    assert rec.docker_calls[-1][:2] == ["docker", "version"]

    def down(argv, **kw):
        return subprocess.CompletedProcess(argv, 1, stdout="", stderr="Cannot connect")

    monkeypatch.setattr(subprocess, "run", down)
    assert not ContainerRunner(pipeline).ping()
