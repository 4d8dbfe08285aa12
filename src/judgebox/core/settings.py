from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MiB = 1024 * 1024


class Settings(BaseSettings):
    """Load cấu hình từ env JUDGE_* + conf/judge.yaml (env được ưu tiên)."""

    # ---- paths ----
    jobs_dir: Path = Path("/srv/judge/jobs")
    security_dir: Path = Path("/srv/judge/security")
    seccomp_policy: Path = Path("conf/seccomp.yaml")
    languages_file: Path = Path("conf/languages.yaml")
    prescreen_rules: Path = Path("conf/prescreen.yaml")

    # ---- stores ----
    database_url: str = "sqlite:///./judge.db"
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "judge_queue"

    # ---- admission control ----
    max_concurrent: int = Field(default=5, ge=1)
    dequeue_timeout_ms: int = 5000
    max_retries: int = 3
    retry_delay_s: float = 1.0
    watchdog_overhead_s: int = 30
    watchdog_interval_s: float = 5.0
    heartbeat_interval_s: float = 5.0

    # ---- limits ----
    compile_timeout_s: int = 10
    compile_memory_bytes: int = 512 * MiB
    default_time_limit_ms: int = 1000
    max_time_limit_ms: int = 10_000
    default_memory_bytes: int = 128 * MiB
    max_memory_bytes: int = 512 * MiB
    stdout_cap_bytes: int = 1_000_000
    stderr_cap_bytes: int = 100_000
    excerpt_chars: int = 2000

    # ---- container runtime / security ----
    docker_bin: str = "docker"
    container_overhead_s: float = 3.0
    sandbox_user: str = "1000:1000"
    apparmor_profile: str = "docker-default"
    cpus: str = "1.0"
    tmpfs_size: str = "50m"
    ulimit_nproc: int = 64
    ulimit_nofile: int = 1024
    ulimit_fsize: int = 1 * MiB
    ulimit_cpu: int = 30

    # ---- intake rate limit ----
    rate_limit_window_s: int = 900
    rate_limit_max: int = 100

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="JUDGE_", extra="ignore")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    return data if isinstance(data, dict) else {}


def _flatten(data: Dict[str, Any]) -> Dict[str, Any]:
    # conf/judge.yaml cho phép gom theo section: paths/queue/limits/security...
    flat: Dict[str, Any] = {}
    for key, val in data.items():
        if isinstance(val, dict) and key not in Settings.model_fields:
            flat.update(val)
        else:
            flat[key] = val
    return flat


def load_settings() -> Settings:
    # 0) env JUDGE_*
    s = Settings()

    # 1) conf/judge.yaml (hoặc JUDGE_CONF)
    data = _flatten(_read_yaml(os.environ.get("JUDGE_CONF", "conf/judge.yaml")))

    # 2) merge các field env chưa set; validate lại để đúng kiểu Path/int/bool
    update = {
        k: v for k, v in data.items()
        if k in Settings.model_fields and k not in s.model_fields_set
    }
    if not update:
        return s
    return Settings.model_validate({**s.model_dump(exclude_unset=True), **update})


@lru_cache
def get_settings() -> Settings:
    return load_settings()
