import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LOG_LEVEL, RABBIT_URL
from .consumer import start_consumer
from .errors import DispatchError, http_status
from .notifications import publisher
from .redispatch_worker import redispatch_loop
from .routes import router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Dispatch Service")
app.include_router(router)

_consumer_conn = None
_stop_event = asyncio.Event()
_redispatch_task = None


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(status_code=http_status(exc), content=exc.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok", "service": "dispatch-service", "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    global _consumer_conn, _redispatch_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    # start domain event consumer (don't crash service)
    try:
        if RABBIT_URL:
            _consumer_conn = await start_consumer(RABBIT_URL)
    except Exception as e:
        _consumer_conn = None
        logger.warning("Domain event consumer failed to start: %s", e)

    _stop_event.clear()
    _redispatch_task = asyncio.create_task(redispatch_loop(_stop_event))


@app.on_event("shutdown")
async def shutdown():
    global _consumer_conn, _redispatch_task
    _stop_event.set()
    if _redispatch_task:
        try:
            await _redispatch_task
        except Exception:
            logger.exception("Re-dispatch worker stopped with an error")
        _redispatch_task = None
    try:
        if _consumer_conn and not _consumer_conn.is_closed:
            await _consumer_conn.close()
    except Exception:
        logger.exception("Error closing consumer connection")
    try:
        await publisher.close()
    except Exception:
        logger.exception("Error closing publisher")
