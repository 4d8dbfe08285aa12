"""
Static pre-screen: quét source bằng bảng rule regex TRƯỚC khi job chiếm sandbox slot.

Chỉ là lớp fast-fail cho UX; ranh giới bảo mật thật là seccomp/ulimit/container.
Rule là dữ liệu (conf/prescreen.yaml), thêm rule không cần sửa engine.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, Iterable, List, Optional

import structlog
import yaml

from ..core.models import Finding

log = structlog.get_logger(__name__)

ANY_LANGUAGE = "*"


@dataclass(frozen=True)
class Rule:
    id: str
    pattern: "re.Pattern[str]"
    languages: FrozenSet[str]
    severity: str
    message: str

    def applies_to(self, language: str) -> bool:
        return ANY_LANGUAGE in self.languages or language in self.languages


def make_rule(id: str, pattern: str, languages: Iterable[str], severity: str, message: str,
              ignore_case: bool = False) -> Rule:
    flags = re.MULTILINE | (re.IGNORECASE if ignore_case else 0)
    return Rule(
        id=id,
        pattern=re.compile(pattern, flags),
        languages=frozenset(l.lower() for l in languages),
        severity=severity.upper(),
        message=message,
    )


C_FAMILY = ("c", "cpp")

DEFAULT_RULES: List[Rule] = [
    # C/C++
    make_rule("fork-call", r"\bv?fork\s*\(\s*\)", C_FAMILY, "HIGH", "Fork bomb detected"),
    make_rule("shell-system", r"\bsystem\s*\(", C_FAMILY, "HIGH", "Shell-out via system() detected"),
    make_rule("shell-popen", r"\bpopen\s*\(", C_FAMILY, "HIGH", "Shell-out via popen() detected"),
    make_rule("exec-family", r"\bexec(?:l|lp|le|v|vp|vpe|ve)\s*\(", C_FAMILY, "HIGH",
              "Process replacement via exec*() detected"),
    make_rule("unsafe-strcpy", r"\bstrcpy\s*\(", C_FAMILY, "MEDIUM", "Unsafe function strcpy()"),
    make_rule("unsafe-strcat", r"\bstrcat\s*\(", C_FAMILY, "MEDIUM", "Unsafe function strcat()"),
    make_rule("unsafe-sprintf", r"\bsprintf\s*\(", C_FAMILY, "MEDIUM", "Unsafe function sprintf()"),
    make_rule("unsafe-gets", r"\bgets\s*\(", C_FAMILY, "MEDIUM", "Unsafe function gets()"),
    # mọi ngôn ngữ
    make_rule("shell-fork-bomb", r":\s*\(\s*\)\s*\{[^}]*:\s*\|\s*:", [ANY_LANGUAGE], "CRITICAL",
              "Bash fork bomb detected"),
    make_rule("rm-rf-root", r"rm\s+-rf\s+/", [ANY_LANGUAGE], "CRITICAL",
              "Attempt to delete root directory detected"),
    make_rule("system-files", r"open\s*\(\s*['\"]/(?:etc|proc|sys)/", [ANY_LANGUAGE], "CRITICAL",
              "Attempt to access system files detected"),
    # Python
    make_rule("py-import-os", r"^\s*(?:import\s+os\b|from\s+os\b.*\bimport\b)", ["python"], "HIGH",
              "OS module import detected"),
    make_rule("py-subprocess", r"\bsubprocess\b", ["python"], "HIGH", "Subprocess usage detected"),
    make_rule("py-socket", r"\b(?:import\s+socket|from\s+socket\s+import|socket\.socket)\b", ["python"], "HIGH", "Socket usage detected"),
    make_rule("py-dunder-import", r"__import__\s*\(", ["python"], "HIGH", "Dynamic import detected"),
    # JavaScript
    make_rule("js-require-fs", r"require\s*\(\s*['\"](?:node:)?fs['\"]\s*\)", ["javascript"], "HIGH",
              "File system module import detected"),
    make_rule("js-child-process", r"require\s*\(\s*['\"](?:node:)?child_process['\"]\s*\)",
              ["javascript"], "HIGH", "Child process module import detected"),
    make_rule("js-require-net", r"require\s*\(\s*['\"](?:node:)?(?:net|http|https|os)['\"]\s*\)",
              ["javascript"], "HIGH", "Network/OS module import detected"),
    # Java
    make_rule("java-runtime-exec", r"Runtime\s*\.\s*getRuntime", ["java"], "HIGH",
              "Runtime execution detected"),
    make_rule("java-process-builder", r"\bProcessBuilder\b", ["java"], "HIGH",
              "Process builder detected"),
]


def load_rules(path: Optional[Path]) -> List[Rule]:
    """
    conf/prescreen.yaml:
      replace_defaults: false
      rules:
        - {id: ..., pattern: ..., languages: [cpp], severity: HIGH, message: ..., ignore_case: false}
    """
    if not path or not path.exists():
        return list(DEFAULT_RULES)
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    rules = [] if data.get("replace_defaults") else list(DEFAULT_RULES)
    for raw in data.get("rules") or []:
        rules.append(make_rule(
            id=str(raw["id"]),
            pattern=str(raw["pattern"]),
            languages=raw.get("languages") or [ANY_LANGUAGE],
            severity=str(raw.get("severity", "HIGH")),
            message=str(raw.get("message", raw["id"])),
            ignore_case=bool(raw.get("ignore_case", False)),
        ))
    log.info("prescreen_rules_loaded", path=str(path), count=len(rules))
    return rules


class PreScreener:
    def __init__(self, rules: Optional[Iterable[Rule]] = None):
        self.rules = list(DEFAULT_RULES if rules is None else rules)

    def scan(self, code: str, language: str) -> List[Finding]:
        language = (language or "").lower()
        findings: List[Finding] = []
        for rule in self.rules:
            if not rule.applies_to(language):
                continue
            m = rule.pattern.search(code or "")
            if m:
                line = code.count("\n", 0, m.start()) + 1
                findings.append(Finding(rule.id, rule.message, rule.severity, line))
        return findings
