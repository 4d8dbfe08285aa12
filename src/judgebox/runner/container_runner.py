from __future__ import annotations

import subprocess
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

import structlog

from ..core.errors import SandboxUnavailableError
from ..core.models import ExecutionResult
from ..isolation.isolation import IsolationPipeline

log = structlog.get_logger(__name__)

RC_TIMEOUT = 124        # coreutils/busybox `timeout`
RC_DOCKER_ERROR = 125   # lỗi của chính docker run (daemon, image...)
RC_SIGKILL = 137

_DAEMON_DOWN_HINTS = ("Cannot connect to the Docker daemon", "error during connect")
_INSPECT_FORMAT = "{{.State.OOMKilled}}|{{.State.StartedAt}}|{{.State.FinishedAt}}"


def _cap(data: bytes, limit: int) -> str:
    text = (data or b"")[:limit].decode("utf-8", errors="replace")
    if data and len(data) > limit:
        text += f"\n... [output truncated, {len(data) - limit} bytes omitted]"
    return text


def _parse_docker_ts(raw: str) -> Optional[datetime]:
    """RFC3339Nano của docker ("2024-05-01T10:00:00.123456789Z") -> datetime UTC."""
    raw = raw.strip()
    if not raw or raw.startswith("0001-01-01"):
        return None
    if raw.endswith("Z"):
        raw = raw[:-1]
    elif "+" in raw[10:]:
        raw = raw[: 10 + raw[10:].index("+")]
    base, _, frac = raw.partition(".")
    try:
        ts = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S")
    except ValueError:
        return None
    micros = int((frac + "000000")[:6]) if frac.isdigit() else 0
    return ts.replace(microsecond=micros, tzinfo=timezone.utc)


class ContainerRunner:
    """
    Chạy MỘT lệnh trong MỘT container mới, chờ xong hoặc hết giờ, rồi luôn `docker rm -f`.
    Dùng 1 primitive duy nhất: Popen.communicate(timeout=...) trong thread của worker.
    """

    def __init__(
        self,
        pipeline: IsolationPipeline,
        *,
        stdout_cap: int = 1_000_000,
        stderr_cap: int = 100_000,
        overhead_s: float = 3.0,
        kill_grace_s: float = 2.0,
    ):
        self.pipeline = pipeline
        self.stdout_cap = stdout_cap
        self.stderr_cap = stderr_cap
        self.overhead_s = overhead_s
        self.kill_grace_s = kill_grace_s

    @property
    def docker_bin(self) -> str:
        return self.pipeline.docker_bin

    def run(
        self,
        *,
        name: str,
        image: str,
        workspace: Path,
        command: str,
        stdin: str,
        time_limit_ms: int,
        memory_bytes: int,
        writable_workspace: bool = False,
    ) -> ExecutionResult:
        timeout_s = time_limit_ms / 1000.0
        argv = self.pipeline.container_args(
            name=name,
            image=image,
            workspace=workspace,
            command=command,
            timeout_s=timeout_s,
            memory_bytes=memory_bytes,
            writable_workspace=writable_workspace,
        )
        # deadline phía host = limit + overhead khởi động container; `timeout` bên trong là lớp đầu
        host_deadline = timeout_s + self.overhead_s

        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise SandboxUnavailableError(f"cannot launch container runtime: {e}", argv0=argv[0]) from e

        host_killed = False
        try:
            try:
                out, err = proc.communicate(input=(stdin or "").encode("utf-8"), timeout=host_deadline)
            except subprocess.TimeoutExpired:
                host_killed = True
                log.warning("sandbox_timeout", container=name, limit_ms=time_limit_ms)
                self._docker("kill", name)
                proc.kill()
                try:
                    out, err = proc.communicate(timeout=self.kill_grace_s)
                except subprocess.TimeoutExpired:
                    out, err = b"", b""
            wall_ms = int((time.monotonic() - start) * 1000)
            rc = proc.returncode if proc.returncode is not None else -9

            err_text = (err or b"").decode("utf-8", errors="replace")
            if not host_killed and (rc == RC_DOCKER_ERROR or any(h in err_text for h in _DAEMON_DOWN_HINTS)):
                raise SandboxUnavailableError(
                    f"container runtime failed (rc={rc}): {err_text.strip()[:500]}", container=name
                )
            oom, run_ms = self._inspect(name)
        finally:
            self._remove(name)

        # run_ms đo trong container (không tính khởi động); exit 124/137 chỉ là TLE khi đã chạy đủ limit.
        # inspect không cho thời gian -> 124 vẫn tính TLE, 137 so theo wall_ms
        if run_ms is None:
            by_clock = rc == RC_TIMEOUT or (rc == RC_SIGKILL and wall_ms >= time_limit_ms)
        else:
            by_clock = rc in (RC_TIMEOUT, RC_SIGKILL) and run_ms >= time_limit_ms
        timed_out = not oom and (host_killed or by_clock)
        result = ExecutionResult(
            stdout=_cap(out, self.stdout_cap),
            stderr=_cap(err, self.stderr_cap),
            exit_code=rc,
            wall_time_ms=wall_ms,
            timed_out=timed_out,
            oom_killed=oom,
        )
        log.debug("sandbox_run_done", container=name, rc=rc, wall_ms=wall_ms, run_ms=run_ms,
                  timed_out=timed_out, oom_killed=oom)
        return result

    # ---------- docker helpers ----------

    def _docker(self, *args: str, timeout: float = 30.0) -> subprocess.CompletedProcess:
        argv: List[str] = [self.docker_bin, *args]
        return subprocess.run(argv, capture_output=True, text=True, timeout=timeout)

    def _inspect(self, name: str) -> Tuple[bool, Optional[int]]:
        """-> (OOMKilled, thời gian chạy trong container tính bằng ms hoặc None)."""
        try:
            res = self._docker("inspect", "--format", _INSPECT_FORMAT, name)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.warning("sandbox_inspect_failed", container=name, error=str(e))
            return False, None
        if res.returncode != 0:
            return False, None
        oom_raw, _, rest = res.stdout.strip().partition("|")
        started_raw, _, finished_raw = rest.partition("|")
        started, finished = _parse_docker_ts(started_raw), _parse_docker_ts(finished_raw)
        run_ms = None
        if started and finished and finished >= started:
            run_ms = (finished - started) // timedelta(milliseconds=1)
        return oom_raw.strip().lower() == "true", run_ms

    def _remove(self, name: str) -> None:
        try:
            res = self._docker("rm", "-f", name)
        except (OSError, subprocess.TimeoutExpired) as e:
            log.error("sandbox_remove_failed", container=name, error=str(e))
            return
        if res.returncode != 0 and "No such container" not in (res.stderr or ""):
            log.error("sandbox_remove_failed", container=name, stderr=(res.stderr or "").strip())

    def ping(self) -> bool:
        try:
            res = self._docker("version", "--format", "{{.Server.Version}}", timeout=10.0)
        except (OSError, subprocess.TimeoutExpired):
            return False
        return res.returncode == 0
