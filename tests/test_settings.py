from pathlib import Path

from judgebox.core.settings import MiB, load_settings
from judgebox.core.utils import parse_size, truncate


def test_yaml_sections_are_flattened(tmp_path, monkeypatch):
    conf = tmp_path / "judge.yaml"
    conf.write_text(
        "paths:\n"
        "  jobs_dir: /tmp/judge-jobs\n"
        "queue:\n"
        "  max_concurrent: 3\n"
        "  queue_name: q-test\n"
        "log_level: DEBUG\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("JUDGE_CONF", str(conf))
    monkeypatch.delenv("JUDGE_MAX_CONCURRENT", raising=False)
    s = load_settings()
    assert s.jobs_dir == Path("/tmp/judge-jobs")
    assert s.max_concurrent == 3
    assert s.queue_name == "q-test"
    assert s.log_level == "DEBUG"


def test_env_wins_over_yaml(tmp_path, monkeypatch):
    conf = tmp_path / "judge.yaml"
    conf.write_text("queue:\n  max_concurrent: 3\n", encoding="utf-8")
    monkeypatch.setenv("JUDGE_CONF", str(conf))
    monkeypatch.setenv("JUDGE_MAX_CONCURRENT", "7")
    assert load_settings().max_concurrent == 7


def test_missing_conf_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("JUDGE_CONF", str(tmp_path / "nope.yaml"))
    monkeypatch.delenv("JUDGE_MAX_CONCURRENT", raising=False)
    s = load_settings()
    assert s.max_concurrent == 5
    assert s.queue_name == "judge_queue"
    assert s.default_memory_bytes == 128 * MiB


def test_parse_size():
    assert parse_size("128m") == 128 * MiB
    assert parse_size("256MiB") == 256 * MiB
    assert parse_size("1g") == 1024 * MiB
    assert parse_size(4096) == 4096
    for bad in ("lots", "", True):
        try:
            parse_size(bad)
        except ValueError:
            continue
        raise AssertionError(f"{bad!r} accepted")


def test_truncate():
    assert truncate("abc", 10) == "abc"
    assert truncate("abcdef", 3).startswith("abc\n... [truncated 3 chars]")
