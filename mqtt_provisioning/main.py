import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .config import settings
from .routes_mqtt import router as mqtt_router
from .scheduler import sync_scheduler
from .service import init_storage

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_storage()
    sync_scheduler.start()

    try:
        yield
    finally:
        sync_scheduler.stop()


app = FastAPI(title="MQTT Provisioning", version="1.0", lifespan=lifespan)

app.include_router(mqtt_router)


@app.get("/healthz", include_in_schema=False)
def healthz() -> dict:
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.WEB_HOST, port=settings.WEB_PORT)
