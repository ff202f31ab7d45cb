import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import CORS_ORIGINS, LOG_LEVEL, REDIS_URL
from database import Base, engine
from exceptions import QueueUnavailableError
from queue_client import QueueClient
from routers import exports
from storage import DeliveryService

# --------------------------------------------------------------------------
# --- Configuration & Setup ---
# --------------------------------------------------------------------------

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")


def create_app(queue_client: QueueClient = None, delivery: DeliveryService = None) -> FastAPI:
    queue_client = queue_client or QueueClient(REDIS_URL)
    delivery = delivery or DeliveryService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        try:
            app.state.queue_client.connect()
        except QueueUnavailableError:
            # Submissions fail fast (job marked failed) until the broker is reachable.
            logging.warning("⚠️ Queue broker unavailable. Export submissions will fail.")
        yield
        app.state.queue_client.close()

    app = FastAPI(
        title="Shader Export Service",
        description="Renders looping shader programs to video files in the background.",
        lifespan=lifespan,
    )
    app.state.queue_client = queue_client
    app.state.delivery = delivery

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(exports.router)

    @app.get("/")
    def read_root():
        return {"status": "🚀 Video Service Worker Running."}

    @app.get("/health")
    def health(request: Request):
        connected = request.app.state.queue_client.is_connected
        return {"status": "ok", "redis": "connected" if connected else "disconnected"}

    return app


app = create_app()
