from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import structlog
import yaml

from .errors import UnknownLanguageError
from .models import LanguageSpec

log = structlog.get_logger(__name__)

# Bảng mặc định; conf/languages.yaml (nếu có) sẽ ghi đè / bổ sung.
DEFAULT_LANGUAGES: Dict[str, LanguageSpec] = {
    "cpp": LanguageSpec(
        id="cpp",
        image="frolvlad/alpine-gxx:latest",
        source_file_name="main.cpp",
        compile_cmd="g++ -std=c++17 -O2 -o /work/solution /work/main.cpp",
        run_cmd="/work/solution",
        needs_compilation=True,
    ),
    "c": LanguageSpec(
        id="c",
        image="frolvlad/alpine-gxx:latest",
        source_file_name="main.c",
        compile_cmd="gcc -std=c11 -O2 -o /work/solution /work/main.c -lm",
        run_cmd="/work/solution",
        needs_compilation=True,
    ),
    "python": LanguageSpec(
        id="python",
        image="python:3.11-slim",
        source_file_name="main.py",
        run_cmd="python3 -u /work/main.py",
    ),
    "java": LanguageSpec(
        id="java",
        image="openjdk:17-slim",
        source_file_name="Main.java",
        compile_cmd="javac /work/Main.java",
        run_cmd="java -cp /work Main",
        needs_compilation=True,
    ),
    "javascript": LanguageSpec(
        id="javascript",
        image="node:18-slim",
        source_file_name="main.js",
        run_cmd="node /work/main.js",
    ),
}


def _spec_from_dict(lang_id: str, raw: Mapping) -> LanguageSpec:
    compile_cmd = raw.get("compile_cmd")
    needs = raw.get("needs_compilation")
    return LanguageSpec(
        id=lang_id,
        image=str(raw["image"]),
        source_file_name=str(raw["source_file_name"]),
        run_cmd=str(raw["run_cmd"]),
        compile_cmd=str(compile_cmd) if compile_cmd else None,
        needs_compilation=bool(compile_cmd) if needs is None else bool(needs),
    )


class LanguageRegistry:
    """Bảng tra cứu LanguageSpec, bất biến sau khi khởi tạo."""

    def __init__(self, specs: Iterable[LanguageSpec]):
        self._specs: Dict[str, LanguageSpec] = {}
        for spec in specs:
            if spec.needs_compilation and not spec.compile_cmd:
                raise ValueError(f"language '{spec.id}' needs compilation but has no compile_cmd")
            self._specs[spec.id.lower()] = spec

    @classmethod
    def from_file(cls, path: Optional[Path]) -> "LanguageRegistry":
        specs = dict(DEFAULT_LANGUAGES)
        if path and path.exists():
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            langs = data.get("languages", data) if isinstance(data, dict) else {}
            for lang_id, raw in (langs or {}).items():
                specs[lang_id] = _spec_from_dict(lang_id, raw)
            log.info("languages_loaded", path=str(path), count=len(specs))
        return cls(specs.values())

    def resolve(self, language_id: str) -> LanguageSpec:
        spec = self._specs.get((language_id or "").strip().lower())
        if spec is None:
            raise UnknownLanguageError(f"Unsupported language: {language_id}", language=language_id)
        return spec

    def ids(self) -> List[str]:
        return sorted(self._specs)

    def __contains__(self, language_id: str) -> bool:
        return (language_id or "").lower() in self._specs
