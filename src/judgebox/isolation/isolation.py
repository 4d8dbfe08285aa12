from __future__ import annotations

from pathlib import Path
from typing import List

from ..core.models import SecurityProfile

WORKDIR = "/work"


class IsolationPipeline:
    """
    Render SecurityProfile thành argv `docker run ...` (wire contract với container runtime).
    Không giữ state ngoài profile read-only -> share an toàn giữa các worker.
    """

    def __init__(self, profile: SecurityProfile, docker_bin: str = "docker", cpus: str = "1.0"):
        self.profile = profile
        self.docker_bin = docker_bin
        self.cpus = cpus

    def security_args(self) -> List[str]:
        p = self.profile
        u = p.ulimits
        args = [
            "--network", "none",
            "--read-only",
            "--tmpfs", p.tmpfs,
            "--pids-limit", str(u.max_processes),
            "--user", p.user,
        ]
        for cap in p.dropped_capabilities:
            args += ["--cap-drop", cap]
        if p.no_new_privileges:
            args += ["--security-opt", "no-new-privileges"]
        args += [
            "--security-opt", f"seccomp={p.seccomp_path}",
            "--security-opt", f"apparmor={p.apparmor_profile}",
            "--ulimit", f"nproc={u.max_processes}:{u.max_processes}",
            "--ulimit", f"nofile={u.max_open_files}:{u.max_open_files}",
            "--ulimit", f"fsize={u.max_file_size_bytes}:{u.max_file_size_bytes}",
            "--ulimit", f"cpu={u.cpu_seconds}:{u.cpu_seconds}",
        ]
        return args

    def container_args(
        self,
        *,
        name: str,
        image: str,
        workspace: Path,
        command: str,
        timeout_s: float,
        memory_bytes: int,
        writable_workspace: bool = False,
    ) -> List[str]:
        # compile cần ghi binary ra /work; mọi lần chạy testcase đều mount :ro
        mode = "rw" if writable_workspace else "ro"
        # `timeout` nhận số thực: 0.5s, 1.5s; không làm tròn lên giây
        duration = f"{round(timeout_s, 3):g}s"
        return [
            self.docker_bin, "run",
            "--name", name,
            "-i",
            "--memory", str(memory_bytes),
            "--memory-swap", str(memory_bytes),
            "--cpus", self.cpus,
            *self.security_args(),
            "-v", f"{Path(workspace).resolve()}:{WORKDIR}:{mode}",
            "-w", WORKDIR,
            image,
            "timeout", "-k", "1s", duration,
            "sh", "-c", command,
        ]
