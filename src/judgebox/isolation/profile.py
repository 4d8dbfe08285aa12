from __future__ import annotations

import structlog

from ..core.errors import SecurityProfileError
from ..core.models import SecurityProfile, Ulimits
from ..core.settings import Settings
from .seccomp import (
    DEFAULT_ACTION,
    build_seccomp_document,
    load_policy,
    resolve_syscalls,
    write_seccomp_document,
)

log = structlog.get_logger(__name__)

DROPPED_CAPABILITIES = ("ALL",)


def build_security_profile(settings: Settings) -> SecurityProfile:
    """
    Dựng SecurityProfile DUY NHẤT cho cả process (gọi 1 lần lúc startup).
    Lỗi bất kỳ -> SecurityProfileError; caller phải dừng, không bao giờ chạy khi thiếu sandbox.
    """
    policy = load_policy(settings.seccomp_policy)
    allow, deny = resolve_syscalls(policy)
    if not allow:
        raise SecurityProfileError("seccomp allow-list is empty")

    errno = int(policy.get("errno", 1))
    doc = build_seccomp_document(allow, deny, errno=errno)
    path = write_seccomp_document(doc, settings.security_dir)

    for name, val in (
        ("ulimit_nproc", settings.ulimit_nproc),
        ("ulimit_nofile", settings.ulimit_nofile),
        ("ulimit_fsize", settings.ulimit_fsize),
        ("ulimit_cpu", settings.ulimit_cpu),
    ):
        if val <= 0:
            raise SecurityProfileError(f"{name} must be positive, got {val}")

    profile = SecurityProfile(
        allowed_syscalls=tuple(allow),
        denied_syscalls=tuple(deny),
        default_action=DEFAULT_ACTION,
        seccomp_path=path.resolve(),
        apparmor_profile=settings.apparmor_profile,
        dropped_capabilities=DROPPED_CAPABILITIES,
        ulimits=Ulimits(
            max_processes=settings.ulimit_nproc,
            max_open_files=settings.ulimit_nofile,
            max_file_size_bytes=settings.ulimit_fsize,
            cpu_seconds=settings.ulimit_cpu,
        ),
        user=settings.sandbox_user,
        tmpfs=f"/tmp:size={settings.tmpfs_size},noexec,nosuid,nodev",
    )
    log.info("security_profile_ready", seccomp=str(profile.seccomp_path),
             apparmor=profile.apparmor_profile, user=profile.user)
    return profile
