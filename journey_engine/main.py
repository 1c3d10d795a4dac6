from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from journey_engine.config import settings
from journey_engine.db import close_pool, init_pool
from journey_engine.routers.deployments import router as deployments_router
from journey_engine.services.context import build_publish_context


@asynccontextmanager
async def lifespan(app: FastAPI):
    pool = await init_pool(settings.database_url) if settings.database_url else None
    app.state.publish_context = await build_publish_context(settings, pool=pool)
    yield
    await close_pool(pool)


app = FastAPI(
    title="journey-engine-x",
    description="Journey touchpoint deployment engine for GoHighLevel",
    lifespan=lifespan,
)

app.include_router(deployments_router)


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
