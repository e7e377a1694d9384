import time
from contextlib import asynccontextmanager
from typing import List, Optional

import psutil
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from .config import EngineConfig, build_host
from .errors import DimensionMismatch, EmbeddingFailed, ModelUnavailable
from .gateway import InferenceGateway
from .ranking import rank_candidates
from .schemas import AVAILABLE_MODELS, CandidateDocument, ModelDescriptor, ModelOption, RankedResult


class RankRequest(BaseModel):
    job_text: str = Field(min_length=1)
    candidates: List[CandidateDocument]


class RankResponse(BaseModel):
    results: List[RankedResult]
    model_id: str
    took_ms: float


class EmbedRequest(BaseModel):
    text: str = Field(min_length=1)


class EmbedResponse(BaseModel):
    vector: List[float]
    dim: int
    model_id: str


class HealthResponse(BaseModel):
    status: str
    model_id: str
    device: Optional[str] = None
    host_started: bool
    host_pid: Optional[int] = None
    host_rss_mb: Optional[float] = None


def _host_rss_mb(pid: Optional[int]) -> Optional[float]:
    """RSS of the model host process, or None when it is not running."""
    if pid is None:
        return None
    try:
        rss = psutil.Process(pid).memory_info().rss
    except psutil.Error:
        return None
    return rss / (1024 * 1024)


def _gateway(request: Request) -> InferenceGateway:
    return request.app.state.gateway


def create_app(config: Optional[EngineConfig] = None, preload: bool = True) -> FastAPI:
    config = config or EngineConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway = InferenceGateway(build_host(config), model_id=config.model_id)
        app.state.gateway = gateway
        if preload:
            gateway.preload()
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(title="CV Ranking Gateway", lifespan=lifespan)

    @app.post("/v1/rank", response_model=RankResponse)
    async def rank(body: RankRequest, request: Request) -> RankResponse:
        gateway = _gateway(request)
        start = time.time()
        try:
            results = await rank_candidates(gateway, body.job_text, body.candidates)
        except ModelUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except EmbeddingFailed as exc:
            raise HTTPException(status_code=502, detail=f"Job embedding failed: {exc}") from exc
        except DimensionMismatch as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        took_ms = (time.time() - start) * 1000.0
        return RankResponse(results=results, model_id=gateway.model_id, took_ms=took_ms)

    @app.post("/v1/embed", response_model=EmbedResponse)
    async def embed(body: EmbedRequest, request: Request) -> EmbedResponse:
        gateway = _gateway(request)
        try:
            vector = await gateway.generate_embedding(body.text)
        except ModelUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except EmbeddingFailed as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return EmbedResponse(vector=vector, dim=len(vector), model_id=gateway.model_id)

    @app.get("/v1/models", response_model=List[ModelOption])
    def models() -> List[ModelOption]:
        return AVAILABLE_MODELS

    @app.get("/v1/model", response_model=ModelDescriptor)
    def get_model(request: Request) -> ModelDescriptor:
        return ModelDescriptor(id=_gateway(request).model_id)

    @app.put("/v1/model", response_model=ModelDescriptor)
    async def put_model(body: ModelDescriptor, request: Request) -> ModelDescriptor:
        gateway = _gateway(request)
        try:
            await gateway.set_model(body.id)
        except ModelUnavailable as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return ModelDescriptor(id=gateway.model_id)

    @app.get("/healthz", response_model=HealthResponse)
    def healthz(request: Request) -> HealthResponse:
        gateway = _gateway(request)
        pid = gateway.host.pid
        return HealthResponse(
            status="ok",
            model_id=gateway.model_id,
            device=gateway.device,
            host_started=gateway.host.started,
            host_pid=pid,
            host_rss_mb=_host_rss_mb(pid),
        )

    return app


app = create_app()

__all__ = ["app", "create_app"]
