from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, Optional, Union

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.errors import InvalidLimitsError, JudgeError, RateLimitedError
from ..core.models import ResourceLimits, Submission
from ..core.utils import parse_size
from ..logging import setup_logging
from ..services.judge_service import JudgeService
from ..services.rate_limit import RateLimiter, RedisExpiringStore


class SubmissionReq(BaseModel):
    user_id: str = Field(min_length=1)
    problem_id: str = Field(min_length=1)
    language: str
    code: str
    time_limit_ms: Optional[int] = None
    memory_limit: Optional[Union[int, str]] = None  # bytes hoặc "256m"


def _limits(req: SubmissionReq, service: JudgeService) -> Optional[ResourceLimits]:
    if req.time_limit_ms is None and req.memory_limit is None:
        return None
    s = service.settings
    try:
        mem = parse_size(req.memory_limit) if req.memory_limit is not None else s.default_memory_bytes
    except ValueError as e:
        raise InvalidLimitsError(str(e)) from e
    tl = req.time_limit_ms if req.time_limit_ms is not None else s.default_time_limit_ms
    return ResourceLimits(time_limit_ms=tl, memory_limit_bytes=mem)


def submission_view(sub: Submission, include_code: bool = False) -> Dict[str, Any]:
    d = asdict(sub)
    if not include_code:
        d.pop("code", None)
    return jsonable_encoder(d)


def create_app(service: Optional[JudgeService] = None,
               limiter: Optional[RateLimiter] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.service is None:
            from ..bootstrap import build_service
            from ..core.settings import get_settings

            settings = get_settings()
            setup_logging(settings.log_level)
            app.state.service = build_service(settings)
        if app.state.limiter is None:
            s = app.state.service.settings
            app.state.limiter = RateLimiter(
                RedisExpiringStore(app.state.service.queue.client),
                window_s=s.rate_limit_window_s,
                max_hits=s.rate_limit_max,
            )
        yield

    app = FastAPI(title="judgebox", lifespan=lifespan)
    app.state.service = service
    app.state.limiter = limiter
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(JudgeError)
    async def judge_error_handler(_request: Request, exc: JudgeError):
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.context.get("retry_after_s", 60))}
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    def get_service(request: Request) -> JudgeService:
        return request.app.state.service

    def rate_limit(request: Request) -> None:
        lim: Optional[RateLimiter] = request.app.state.limiter
        if lim is not None:
            lim.check(request.client.host if request.client else "-")

    @app.post("/submissions", status_code=202, dependencies=[Depends(rate_limit)])
    def submit(req: SubmissionReq, service: JudgeService = Depends(get_service)):
        sid = service.submit(req.user_id, req.problem_id, req.language, req.code,
                             limits=_limits(req, service))
        sub = service.get_status(sid)
        return {"submission_id": sid, "status": sub.status.value}

    @app.get("/submissions/{submission_id}")
    def status(submission_id: str, service: JudgeService = Depends(get_service)):
        return submission_view(service.get_status(submission_id))

    @app.get("/queue/status")
    def queue_status(service: JudgeService = Depends(get_service)):
        return asdict(service.get_queue_status())

    @app.get("/languages")
    def languages(service: JudgeService = Depends(get_service)):
        return [
            {"id": spec.id, "image": spec.image, "needs_compilation": spec.needs_compilation}
            for spec in (service.registry.resolve(i) for i in service.registry.ids())
        ]

    @app.get("/health")
    def health(service: JudgeService = Depends(get_service)):
        qs = service.get_queue_status()
        body = {"status": "ok" if qs.healthy else "unavailable", **asdict(qs)}
        return JSONResponse(status_code=200 if qs.healthy else 503, content=body)

    return app


app = create_app()
