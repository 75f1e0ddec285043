# server.py
import os
import time
import asyncio
import logging
import contextlib
from dataclasses import dataclass
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from appconfig import (
    CONFIG_PATH,
    DB_PATH,
    HOST,
    KEEPALIVE_SECONDS,
    LOG_LEVEL,
    LOG_PATH,
    PORT,
    VERSION,
    ConfigHolder,
    load_or_init,
)
from errors import GatewayError, InvalidRequest
from keystore import SecretProvider, get_api_key, make_secret_provider
from memstore import MemoryStore, init_store
from resolver import check_provider, resolve_model, split_provider
from schemas import (
    ChatRequest,
    MemoryQueryRequest,
    MemoryQueryResponse,
    MemoryStoreRequest,
    MemoryStoreResponse,
    ModelsResponse,
)
from upstream import StreamDecoder, complete, history_persister, open_stream, relay_stream

logger = logging.getLogger(__name__)

KEEPALIVE = b": keep-alive\n\n"
QUEUE_SIZE = 64
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

router = APIRouter()


@dataclass
class GatewayState:
    """Everything a request handler shares with every other request."""

    config: ConfigHolder
    store: MemoryStore
    secrets: SecretProvider
    client: httpx.AsyncClient
    started_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = time.monotonic()


def setup_logging(level: str = LOG_LEVEL, log_path: Optional[str] = LOG_PATH) -> None:
    handlers: list = [logging.StreamHandler()]
    if log_path:
        os.makedirs(os.path.dirname(os.path.abspath(log_path)), exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a", encoding="utf-8"))
    logging.basicConfig(
        format=LOG_FORMAT,
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
    )


def _new_client() -> httpx.AsyncClient:
    limits = httpx.Limits(max_connections=20, max_keepalive_connections=20)
    return httpx.AsyncClient(http2=True, limits=limits)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup; a pre-built state (tests, embedding shells) is used as-is
    owned: Optional[GatewayState] = None
    if getattr(app.state, "gateway", None) is None:
        owned = GatewayState(
            config=ConfigHolder(load_or_init(CONFIG_PATH)),
            store=init_store(db_path=DB_PATH),
            secrets=make_secret_provider(),
            client=_new_client(),
        )
        app.state.gateway = owned
        logger.info("HaloDesk gateway starting up (db=%s, config=%s)", DB_PATH, CONFIG_PATH)
    yield
    # Shutdown
    if owned is not None:
        await owned.client.aclose()
        owned.store.close()
        app.state.gateway = None


def _gateway(request: Request) -> GatewayState:
    return request.app.state.gateway


async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(exc.to_dict(), status_code=exc.status)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return await _gateway_error(request, InvalidRequest("; ".join(parts) or "invalid request body"))


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    uptime = time.monotonic() - _gateway(request).started_at
    return {"status": "ok", "version": VERSION, "uptime_ms": int(uptime * 1000)}


@router.get("/v1/models", response_model=ModelsResponse)
async def list_models(request: Request) -> ModelsResponse:
    config = await _gateway(request).config.snapshot()
    return ModelsResponse(
        text_default=config.text_default_model,
        vision_default=config.vision_default_model,
        models=config.models,
    )


@router.post("/v1/chat")
async def chat(req: ChatRequest, request: Request):
    gw = _gateway(request)
    config = await gw.config.snapshot()
    model_id = resolve_model(req, config)
    resolved = split_provider(model_id)
    check_provider(resolved)
    key = await get_api_key(gw.secrets)
    logger.info("Chat: model=%s stream=%s messages=%d image=%s",
                model_id, req.wants_stream, len(req.messages), req.image is not None)

    if not req.wants_stream:
        return await complete(gw.client, gw.store, req, model_id, resolved.model, key)

    resp = await open_stream(gw.client, req, resolved.model, key)
    decoder = StreamDecoder(model_id=model_id, provider=resolved.provider)
    persist = history_persister(gw.store, req, model_id)

    async def event_gen():
        queue: "asyncio.Queue" = asyncio.Queue(maxsize=QUEUE_SIZE)
        task = asyncio.create_task(relay_stream(resp, decoder, persist, queue))
        try:
            while True:
                try:
                    evt = await asyncio.wait_for(queue.get(), KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if task.done() and queue.empty():
                        break
                    yield KEEPALIVE
                    continue
                if evt is None:
                    break
                yield evt.encode()
        finally:
            # caller went away mid-stream: tear the relay down
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    return StreamingResponse(
        event_gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(resp.aclose),
    )


@router.post("/v1/memory/store", response_model=MemoryStoreResponse)
async def memory_store(body: MemoryStoreRequest, request: Request) -> Dict[str, str]:
    return await _gateway(request).store.store(body.type, body.payload)


@router.post("/v1/memory/query", response_model=MemoryQueryResponse)
async def memory_query(body: MemoryQueryRequest, request: Request) -> Dict[str, Any]:
    return await _gateway(request).store.query(body.query, body.limit)


def create_app(state: Optional[GatewayState] = None) -> FastAPI:
    app = FastAPI(title="HaloDesk Router", version=VERSION, lifespan=lifespan)
    app.state.gateway = state

    # Loopback only; the desktop UI is served from its own origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GatewayError, _gateway_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    app.include_router(router)
    return app


app = create_app()


def main() -> None:
    import uvicorn

    setup_logging()
    logger.info("Listening on http://%s:%d", HOST, PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
