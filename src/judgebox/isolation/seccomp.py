from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
import yaml

from ..core.errors import SecurityProfileError

log = structlog.get_logger(__name__)

DEFAULT_ACTION = "SCMP_ACT_ERRNO"
ARCHITECTURES = ["SCMP_ARCH_X86_64", "SCMP_ARCH_X86", "SCMP_ARCH_X32", "SCMP_ARCH_AARCH64"]

# Syscall cần cho compute/I/O bình thường: file, bộ nhớ, signal, scheduling, process.
BASE_ALLOW = [
    # file / fd
    "read", "readv", "pread64", "preadv", "preadv2", "write", "writev", "pwrite64", "pwritev",
    "open", "openat", "openat2", "close", "close_range", "creat", "lseek", "_llseek",
    "stat", "fstat", "lstat", "newfstatat", "statx", "statfs", "fstatfs",
    "access", "faccessat", "faccessat2", "readlink", "readlinkat",
    "getdents", "getdents64", "getcwd", "chdir", "fchdir",
    "fcntl", "fcntl64", "dup", "dup2", "dup3", "pipe", "pipe2", "ioctl",
    "flock", "fsync", "fdatasync", "ftruncate", "truncate", "fadvise64",
    "mkdir", "mkdirat", "unlink", "unlinkat", "rename", "renameat", "renameat2",
    "umask", "chmod", "fchmod", "fchmodat", "chown", "fchown", "fchownat", "lchown",
    "utime", "utimes", "utimensat", "futimesat", "fallocate", "rmdir",
    "link", "linkat", "symlink", "symlinkat", "sync", "syncfs", "sync_file_range",
    "getxattr", "lgetxattr", "fgetxattr", "listxattr", "flistxattr",
    "sendfile", "copy_file_range", "splice", "tee", "memfd_create", "signalfd", "signalfd4",
    "select", "_newselect", "pselect6", "poll", "ppoll",
    "epoll_create", "epoll_create1", "epoll_ctl", "epoll_wait", "epoll_pwait",
    "eventfd", "eventfd2",
    # memory
    "brk", "mmap", "mmap2", "munmap", "mremap", "mprotect", "madvise", "mincore",
    "msync", "membarrier",
    # signal
    "rt_sigaction", "rt_sigprocmask", "rt_sigreturn", "rt_sigsuspend", "rt_sigpending",
    "rt_sigtimedwait", "rt_sigqueueinfo", "sigaltstack", "sigreturn",
    "kill", "tgkill", "tkill", "pause", "alarm", "setitimer", "getitimer",
    # time / scheduling
    "clock_gettime", "clock_getres", "clock_nanosleep", "gettimeofday", "time", "times",
    "nanosleep", "sched_yield", "sched_getaffinity", "sched_setaffinity",
    "sched_getparam", "sched_getscheduler", "sched_get_priority_max", "sched_get_priority_min",
    "timer_create", "timer_settime", "timer_gettime", "timer_getoverrun", "timer_delete",
    # process / thread
    "execve", "execveat", "fork", "vfork", "clone", "clone3", "wait4", "waitid",
    "exit", "exit_group", "futex", "set_robust_list", "get_robust_list",
    "set_tid_address", "arch_prctl", "prctl", "rseq", "getrandom",
    "getpid", "getppid", "gettid", "getuid", "geteuid", "getgid", "getegid",
    "getgroups", "getresuid", "getresgid", "getpgrp", "getpgid", "setpgid", "getsid", "setsid",
    "getrlimit", "setrlimit", "prlimit64", "getrusage", "getpriority",
    "uname", "sysinfo", "capget", "capset", "restart_syscall",
    # socketpair cho IPC nội bộ runtime (mạng đã bị --network none)
    "socketpair",
]

# Namespace / kernel module / ptrace / reboot / mount / keyring / đồng hồ hệ thống.
BASE_DENY = [
    "ptrace", "process_vm_readv", "process_vm_writev", "kcmp",
    "unshare", "setns", "pivot_root", "chroot", "mount", "umount", "umount2",
    "init_module", "finit_module", "delete_module", "create_module", "query_module",
    "get_kernel_syms", "kexec_load", "kexec_file_load", "reboot",
    "bpf", "perf_event_open", "userfaultfd", "fanotify_init", "fanotify_mark",
    "add_key", "request_key", "keyctl",
    "acct", "swapon", "swapoff", "quotactl", "syslog", "vhangup", "uselib", "ustat", "sysfs",
    "nfsservctl", "lookup_dcookie", "iopl", "ioperm", "personality",
    "sethostname", "setdomainname", "settimeofday", "clock_settime", "clock_adjtime", "adjtimex",
    "open_by_handle_at", "name_to_handle_at", "mbind", "migrate_pages", "move_pages",
    "set_mempolicy",
]


def _dedup(names: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(str(n).strip().rstrip(";") for n in names if str(n).strip()))


def load_policy(policy_path: Optional[Path]) -> Dict[str, Any]:
    """
    Đọc policy seccomp từ YAML hoặc JSON:
      default_action: ERRNO
      errno: 1
      allow: [...]   # cộng thêm vào BASE_ALLOW
      block: [...]   # cộng thêm vào BASE_DENY
    File không tồn tại -> dùng danh sách mặc định.
    """
    if not policy_path or not policy_path.exists():
        return {}
    txt = policy_path.read_text(encoding="utf-8").strip()
    if not txt:
        return {}
    try:
        data = json.loads(txt) if txt[0] in "{[" else yaml.safe_load(txt)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SecurityProfileError(f"invalid seccomp policy {policy_path}: {e}") from e
    if isinstance(data, list):
        # dạng list trơn = deny-list
        return {"block": data}
    if not isinstance(data, dict):
        raise SecurityProfileError(f"invalid seccomp policy {policy_path}: expected mapping")
    return data


def resolve_syscalls(policy: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    deny = _dedup(BASE_DENY + list(policy.get("block") or []))
    denied = set(deny)
    # syscall vừa allow vừa deny -> deny thắng
    allow = [n for n in _dedup(BASE_ALLOW + list(policy.get("allow") or [])) if n not in denied]
    return allow, deny


def build_seccomp_document(allow: List[str], deny: List[str], errno: int = 1) -> Dict[str, Any]:
    """Render theo format JSON mà docker --security-opt seccomp=<file> đọc."""
    return {
        "defaultAction": DEFAULT_ACTION,
        "defaultErrnoRet": errno,
        "architectures": list(ARCHITECTURES),
        "syscalls": [
            {"names": list(allow), "action": "SCMP_ACT_ALLOW"},
            {"names": list(deny), "action": "SCMP_ACT_ERRNO", "errnoRet": errno},
        ],
    }


def write_seccomp_document(doc: Dict[str, Any], security_dir: Path) -> Path:
    """Ghi atomic seccomp.json rồi đọc lại để chắc chắn runtime load được."""
    target = security_dir / "seccomp.json"
    try:
        security_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".seccomp-", suffix=".json", dir=str(security_dir))
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2)
        os.chmod(tmp, 0o644)
        os.replace(tmp, target)
        if json.loads(target.read_text(encoding="utf-8")) != doc:
            raise SecurityProfileError(f"seccomp profile read-back mismatch at {target}")
    except (OSError, ValueError) as e:
        raise SecurityProfileError(f"cannot write seccomp profile to {target}: {e}") from e
    log.info("seccomp_profile_written", path=str(target),
             allowed=len(doc["syscalls"][0]["names"]), denied=len(doc["syscalls"][1]["names"]))
    return target
