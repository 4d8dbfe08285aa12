import threading
from datetime import timedelta

import pytest

from judgebox.core.db import make_engine
from judgebox.core.errors import IllegalTransitionError, SubmissionFinalizedError, SubmissionNotFoundError
from judgebox.core.models import SubmissionStatus as S, Testcase
from judgebox.services.judge import judge
from judgebox.services.state_machine import SubmissionStateMachine
from judgebox.services.submission_store import SubmissionRecord, SubmissionStore

from conftest import ok


def _queued(machine):
    sub = machine.create("u1", "p1", "python", "print(1)")
    machine.mark_queued(sub.id)
    return sub.id


def test_happy_path_persists_verdicts(machine):
    sid = _queued(machine)
    assert machine.claim(sid, "w0").status is S.RUNNING

    verdicts = [judge(ok("1"), Testcase(id="7", input="", expected_output="1", point=5))]
    machine.finalize(sid, S.ACCEPTED, verdicts, 5)

    sub = machine.store.find_by_id(sid)
    assert sub.status is S.ACCEPTED and sub.total_score == 5
    assert sub.worker_id == "w0"
    assert sub.started_at is not None and sub.judged_at is not None
    assert sub.verdicts[0].testcase_id == "7" and sub.verdicts[0].passed


def test_second_claim_loses(machine):
    sid = _queued(machine)
    assert machine.claim(sid, "w0") is not None
    assert machine.claim(sid, "w1") is None
    assert machine.store.find_by_id(sid).worker_id == "w0"


def test_terminal_states_are_final(machine):
    sid = _queued(machine)
    machine.claim(sid, "w0")
    machine.finalize(sid, S.WRONG_ANSWER, [], 0)

    with pytest.raises(SubmissionFinalizedError):
        machine.finalize(sid, S.ACCEPTED, [], 10)
    with pytest.raises(SubmissionFinalizedError):
        machine.fail(sid, "late")
    with pytest.raises(SubmissionFinalizedError):
        machine.record_attempt(sid, 2)
    assert machine.store.find_by_id(sid).status is S.WRONG_ANSWER


def test_reject_only_from_pending(machine):
    sub = machine.create("u1", "p1", "cpp", "fork();")
    machine.reject(sub.id, "SECURITY_REJECTED")
    assert machine.store.find_by_id(sub.id).reason == "SECURITY_REJECTED"

    sid = _queued(machine)
    with pytest.raises(IllegalTransitionError):
        machine.reject(sid, "SECURITY_REJECTED")


def test_finalize_requires_running(machine):
    sid = _queued(machine)
    with pytest.raises(IllegalTransitionError):
        machine.finalize(sid, S.ACCEPTED, [], 0)


def test_finalize_rejects_non_judged_status(machine):
    sid = _queued(machine)
    machine.claim(sid, "w0")
    with pytest.raises(IllegalTransitionError):
        machine.finalize(sid, S.INTERNAL_ERROR, [], 0)


def test_intake_failure_from_queued(machine):
    sid = _queued(machine)
    assert machine.fail(sid, "QUEUE_UNAVAILABLE").status is S.INTERNAL_ERROR


def test_unknown_submission(machine):
    with pytest.raises(SubmissionNotFoundError):
        machine.mark_queued("nope")
    assert machine.claim("nope", "w0") is None


def test_concurrent_claims_are_exclusive(tmp_path):
    machine = SubmissionStateMachine(SubmissionStore(engine=make_engine(f"sqlite:///{tmp_path / 'j.db'}")))
    sid = _queued(machine)
    winners = []
    barrier = threading.Barrier(8)

    def contend(i):
        barrier.wait()
        if machine.claim(sid, f"w{i}") is not None:
            winners.append(i)

    threads = [threading.Thread(target=contend, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(winners) == 1


def test_timestamps_are_timezone_aware_utc(machine):
    sid = _queued(machine)
    machine.claim(sid, "w0")
    machine.finalize(sid, S.ACCEPTED, [], 0)

    sub = machine.store.find_by_id(sid)
    for ts in (sub.created_at, sub.started_at, sub.judged_at):
        assert ts is not None and ts.utcoffset() == timedelta(0)
    assert sub.created_at <= sub.started_at <= sub.judged_at
    assert SubmissionRecord.__table__.c.created_at.type.timezone
