import logging
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from .broker import RedisQueue
from .db import DB
from .logs import configure_logging
from .models import Payment, PublishBody
from .pipeline import Pipeline
from .producer import publish_record
from .settings import DATABASE_URL, HTTP_PORT, LOG_FILE, LOG_LEVEL, QUEUE_KEY, REDIS_URL

logger = logging.getLogger("ingestor")


def _require_ready(pipeline: Pipeline) -> None:
    if not pipeline.ready:
        raise HTTPException(status_code=503, detail="pipeline not ready")


def create_app(pipeline: Optional[Pipeline] = None) -> FastAPI:
    if pipeline is None:
        pipeline = Pipeline(DB(DATABASE_URL), RedisQueue.from_url(REDIS_URL, QUEUE_KEY))

    app = FastAPI(title="FastTrack Payment Ingestion")
    app.state.pipeline = pipeline

    @app.on_event("startup")
    async def startup():
        logger.info("starting fasttrack payment ingestion")
        await pipeline.start()
        logger.info("application is running")

    @app.on_event("shutdown")
    async def shutdown():
        logger.info("shutting down gracefully")
        await pipeline.stop()

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "OK"

    @app.post("/publish")
    async def publish(body: PublishBody):
        _require_ready(pipeline)

        batch: List[Payment]
        if isinstance(body, list):
            batch = body
        else:
            batch = [body]

        accepted = 0
        for p in batch:
            if await publish_record(pipeline.queue, p):
                accepted += 1
        if batch and accepted == 0:
            raise HTTPException(status_code=503, detail="broker unavailable")

        return JSONResponse({"accepted": accepted, "queue": pipeline.queue.key})

    @app.get("/payments")
    async def payments(limit: int = Query(1000, ge=1, le=1000)):
        _require_ready(pipeline)
        return await pipeline.db.fetch_payments(limit)

    @app.get("/skipped")
    async def skipped(limit: int = Query(1000, ge=1, le=1000)):
        _require_ready(pipeline)
        return await pipeline.db.fetch_skipped(limit)

    return app


configure_logging(LOG_LEVEL, LOG_FILE)
app = create_app()


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=HTTP_PORT, log_config=None)
