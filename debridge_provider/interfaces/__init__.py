"""
Web Interface - FastAPI request layer exposing getSnapshot and ping
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger

from ..data.config import ProviderSettings
from ..data.errors import ConfigurationError, SnapshotError
from ..data.models import PingResult, ProviderSnapshot, SnapshotRequest
from ..data.pipelines.snapshot import DataProviderService


def create_app(settings: Optional[ProviderSettings] = None,
               service: Optional[DataProviderService] = None) -> FastAPI:
    """Build the API; the service lives for the lifetime of the app"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        provider = service or DataProviderService(settings or ProviderSettings())
        app.state.service = provider
        try:
            # a failing upstream must not prevent startup
            await provider.ping()
        except Exception as e:
            logger.warning(f"Ping failed during initialization: {e}")
        logger.info("Data provider API started")
        try:
            yield
        finally:
            await provider.close()
            logger.info("Data provider API stopped")

    app = FastAPI(
        title="deBridge Data Provider API",
        description="Volumes, rates, liquidity depth and route intelligence for deBridge DLN routes",
        lifespan=lifespan,
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.post("/snapshot", response_model=ProviderSnapshot, response_model_by_alias=True)
    async def get_snapshot(payload: SnapshotRequest, request: Request):
        provider: DataProviderService = request.app.state.service
        try:
            snapshot = await provider.get_snapshot(payload)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SnapshotError as e:
            logger.error(f"Snapshot request failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))
        content = snapshot.model_dump(mode="json", by_alias=True)
        if snapshot.route_intelligence is None:
            content.pop("routeIntelligence", None)
        return JSONResponse(content)

    @app.get("/ping", response_model=PingResult, response_model_by_alias=True)
    async def ping(request: Request):
        provider: DataProviderService = request.app.state.service
        return await provider.ping()

    return app
