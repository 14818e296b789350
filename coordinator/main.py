from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from coordinator.config import get_settings
from coordinator.errors import TransitionError
from coordinator.metrics import get_metrics_bytes, get_metrics_content_type
from coordinator.routes import admin, orders
from coordinator.service import build_engine, close_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own engine before startup
    owned = getattr(app.state, "engine", None) is None
    if owned:
        app.state.engine = await build_engine(get_settings())
    yield
    if owned:
        await close_engine(app.state.engine)
        app.state.engine = None


app = FastAPI(title="Order Fulfillment Coordinator", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(admin.router)


@app.exception_handler(TransitionError)
async def transition_error_handler(request: Request, exc: TransitionError) -> JSONResponse:
    """Each error kind keeps its own status and code; retryable ones say so."""
    return JSONResponse(
        status_code=exc.http_status,
        content={"status": "error", **exc.to_dict()},
    )


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
