from __future__ import annotations

import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

from ..core.errors import WorkspaceError
from ..core.models import LanguageSpec

log = structlog.get_logger(__name__)

WS_PREFIX = "ws-"


class WorkspaceStorage:
    """
    Workspace tạm cho mỗi lần execute, cấu trúc:
      jobs/ws-<submission_id>-<rand>/
        ├─ <source_file_name>   (code user gửi, 0644)
        └─ solution / *.class    (do bước compile sinh ra)
    Container chạy với uid 1000 nên thư mục phải ghi được khi compile (0777).
    """

    def __init__(self, jobs_dir: Path):
        # đảm bảo là absolute path
        self.jobs_dir = jobs_dir if jobs_dir.is_absolute() else jobs_dir.resolve()
        try:
            self.jobs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkspaceError(f"cannot create jobs dir {self.jobs_dir}: {e}") from e

    def create_workspace(self, submission_id: str, code: str, lang: LanguageSpec) -> Path:
        try:
            ws = Path(tempfile.mkdtemp(prefix=f"{WS_PREFIX}{submission_id}-", dir=str(self.jobs_dir)))
            os.chmod(ws, 0o777)
            src = ws / lang.source_file_name
            src.write_text(code, encoding="utf-8")
            os.chmod(src, 0o644)
        except OSError as e:
            raise WorkspaceError(f"cannot materialize workspace: {e}", submission_id=submission_id) from e
        return ws  # -> ABS path vì self.jobs_dir là ABS

    def destroy(self, ws: Path) -> None:
        try:
            shutil.rmtree(ws)
        except FileNotFoundError:
            return
        except OSError as e:
            log.error("workspace_cleanup_failed", workspace=str(ws), error=str(e))

    @contextmanager
    def workspace(self, submission_id: str, code: str, lang: LanguageSpec) -> Iterator[Path]:
        ws = self.create_workspace(submission_id, code, lang)
        try:
            yield ws
        finally:
            self.destroy(ws)

    def sweep_stale(self, older_than_s: float = 0.0) -> int:
        """Dọn workspace còn sót lại sau khi engine crash (gọi lúc startup)."""
        now = time.time()
        removed = 0
        for p in self.jobs_dir.glob(f"{WS_PREFIX}*"):
            try:
                if not p.is_dir() or now - p.stat().st_mtime < older_than_s:
                    continue
            except OSError:
                continue
            self.destroy(p)
            removed += 1
        if removed:
            log.info("workspace_swept", count=removed, jobs_dir=str(self.jobs_dir))
        return removed
