import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import DateTime, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, select

from ..core.db import make_engine
from ..core.errors import (
    IllegalTransitionError,
    SubmissionFinalizedError,
    SubmissionNotFoundError,
)
from ..core.models import (
    TERMINAL_STATUSES,
    Submission,
    SubmissionStatus,
    Testcase,
    TestcaseVerdict,
)


class SubmissionRecord(SQLModel, table=True):
    __tablename__ = "submissions"

    id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    problem_id: str = Field(index=True)
    language: str
    code: str
    status: SubmissionStatus = Field(default=SubmissionStatus.PENDING, index=True)
    verdicts_json: str = "[]"
    total_score: int = 0
    reason: Optional[str] = None
    compile_output: Optional[str] = None
    created_at: datetime = Field(sa_type=DateTime(timezone=True))
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    judged_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    worker_id: Optional[str] = None
    attempts: int = 0


class TestcaseRecord(SQLModel, table=True):
    __tablename__ = "testcases"

    id: Optional[int] = Field(default=None, primary_key=True)
    problem_id: str = Field(index=True)
    input: str = ""
    expected_output: str = ""
    point: int = 0
    is_public: bool = False


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite trả về datetime naive dù cột khai báo timezone=True; giá trị lưu luôn là UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(rec: SubmissionRecord) -> Submission:
    return Submission(
        id=rec.id,
        user_id=rec.user_id,
        problem_id=rec.problem_id,
        language=rec.language,
        code=rec.code,
        status=SubmissionStatus(rec.status),
        verdicts=[TestcaseVerdict.from_dict(d) for d in json.loads(rec.verdicts_json or "[]")],
        total_score=rec.total_score,
        reason=rec.reason,
        compile_output=rec.compile_output,
        created_at=_utc(rec.created_at),
        started_at=_utc(rec.started_at),
        judged_at=_utc(rec.judged_at),
        worker_id=rec.worker_id,
        attempts=rec.attempts,
    )


def _column_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(fields)
    if "verdicts" in values:
        values["verdicts_json"] = json.dumps(
            [v.to_dict() for v in values.pop("verdicts")], ensure_ascii=False
        )
    unknown = set(values) - set(SubmissionRecord.model_fields)
    if unknown:
        raise ValueError(f"unknown submission fields: {sorted(unknown)}")
    return values


class SubmissionStore:
    def __init__(self, url: str = "sqlite:///./judge.db", engine: Optional[Engine] = None):
        self.engine = engine or make_engine(url)
        SQLModel.metadata.create_all(self.engine)
        # tạo Session factory với expire_on_commit=False
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def create(self, sub: Submission) -> Submission:
        rec = SubmissionRecord(
            id=sub.id,
            user_id=sub.user_id,
            problem_id=sub.problem_id,
            language=sub.language,
            code=sub.code,
            status=sub.status,
            verdicts_json=json.dumps([v.to_dict() for v in sub.verdicts], ensure_ascii=False),
            total_score=sub.total_score,
            reason=sub.reason,
            compile_output=sub.compile_output,
            created_at=sub.created_at,
            started_at=sub.started_at,
            judged_at=sub.judged_at,
            worker_id=sub.worker_id,
            attempts=sub.attempts,
        )
        with self.SessionLocal() as s:
            s.add(rec)
            s.commit()
        return sub

    def find_by_id(self, submission_id: str) -> Optional[Submission]:
        with self.SessionLocal() as s:
            rec = s.get(SubmissionRecord, submission_id)
            return _to_domain(rec) if rec else None

    def transition(
        self,
        submission_id: str,
        from_states: Iterable[SubmissionStatus],
        to: SubmissionStatus,
        **fields: Any,
    ) -> Submission:
        """
        UPDATE ... SET status=to WHERE id=? AND status IN from_states.
        rowcount = 0 -> không tồn tại / đã terminal / sai trạng thái nguồn.
        """
        values = _column_values(fields)
        values["status"] = to
        self._conditional_update(submission_id, list(from_states), values, target=to)
        return self._get(submission_id)

    def update(self, submission_id: str, **fields: Any) -> Submission:
        """Sửa field (không đổi status) khi submission chưa terminal."""
        if "status" in fields:
            raise ValueError("use transition() to change status")
        values = _column_values(fields)
        live = [st for st in SubmissionStatus if st not in TERMINAL_STATUSES]
        self._conditional_update(submission_id, live, values, target=None)
        return self._get(submission_id)

    # ---------- internal ----------

    def _conditional_update(self, submission_id: str, from_states: List[SubmissionStatus],
                            values: Dict[str, Any], target: Optional[SubmissionStatus]) -> None:
        stmt = (
            update(SubmissionRecord)
            .where(SubmissionRecord.id == submission_id)
            .where(SubmissionRecord.status.in_(from_states))
            .values(**values)
        )
        with self.engine.begin() as conn:
            rowcount = conn.execute(stmt).rowcount
        if rowcount == 1:
            return

        current = self.find_by_id(submission_id)
        if current is None:
            raise SubmissionNotFoundError(submission_id=submission_id)
        if current.status.is_terminal:
            raise SubmissionFinalizedError(submission_id=submission_id, status=current.status.value)
        raise IllegalTransitionError(
            f"cannot move {current.status.value} -> {target.value if target else current.status.value}",
            submission_id=submission_id,
        )

    def _get(self, submission_id: str) -> Submission:
        sub = self.find_by_id(submission_id)
        if sub is None:
            raise SubmissionNotFoundError(submission_id=submission_id)
        return sub


class TestcaseStore:
    __test__ = False

    def __init__(self, url: str = "sqlite:///./judge.db", engine: Optional[Engine] = None):
        self.engine = engine or make_engine(url)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def get_testcases(self, problem_id: str) -> List[Testcase]:
        with self.SessionLocal() as s:
            rows = s.exec(
                select(TestcaseRecord)
                .where(TestcaseRecord.problem_id == problem_id)
                .order_by(TestcaseRecord.id)
            ).all()
        return [
            Testcase(
                id=str(r.id),
                input=r.input,
                expected_output=r.expected_output,
                point=r.point,
                is_public=r.is_public,
            )
            for r in rows
        ]

    def add_testcase(self, problem_id: str, input: str, expected_output: str,
                     point: int = 0, is_public: bool = False) -> Testcase:
        rec = TestcaseRecord(problem_id=problem_id, input=input, expected_output=expected_output,
                             point=point, is_public=is_public)
        with self.SessionLocal() as s:
            s.add(rec)
            s.commit()
            s.refresh(rec)
        return Testcase(id=str(rec.id), input=rec.input, expected_output=rec.expected_output,
                        point=rec.point, is_public=rec.is_public)
