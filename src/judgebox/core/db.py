from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine


def make_engine(url: str = "sqlite:///./judge.db") -> Engine:
    """Engine dùng chung cho SubmissionStore + TestcaseStore; worker là thread nên sqlite cần check_same_thread=False."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # in-memory: mọi connection phải dùng chung 1 DB
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)
