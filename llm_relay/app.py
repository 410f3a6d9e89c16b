# LLM Relay - OpenAI API compatible failover proxy for multiple LLM backends
# Copyright (C) 2025
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
FastAPI application exposing OpenAI compatible endpoints on top of the dispatcher.
"""
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth_service import AuthService
from .backend_service import BackendRegistry
from .config import Settings, settings
from .dispatch_service import DispatchService, RotationCursor, StreamSession
from .exceptions import AllBackendsFailed, InvalidRequestBody
from .models import ModelInfo, ModelListResponse
from .normalizer import extract_conversation, normalize_tools
from .response_composer import (
    ApiFlavor,
    compose,
    placeholder_result,
    stream_chunks,
    stream_placeholder,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no"  # Disable nginx buffering if present
}

NO_RESPONSE_TEXT = "\nError: No response could be obtained from any model."

router = APIRouter()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_dispatch_service(request: Request) -> DispatchService:
    return request.app.state.dispatcher


async def verify_api_key(request: Request) -> None:
    """Reject the request unless it carries the shared secret (when one is set)."""
    auth_service: AuthService = request.app.state.auth
    if not auth_service.is_authorized(request.headers):
        logger.warning(f"Rejected request to {request.url.path}: invalid API key")
        raise HTTPException(
            status_code=401,
            detail={"error": "Unauthorized: Invalid API Key"}
        )


async def read_json_body(request: Request) -> Dict[str, Any]:
    """Parse the request body; anything but a JSON object reads as empty."""
    raw = await request.body()
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidRequestBody(str(e)) from e
    return body if isinstance(body, dict) else {}


def _exhausted_detail(error: AllBackendsFailed) -> Dict[str, Any]:
    return {
        "error": {
            "message": "All configured backends failed to respond",
            "type": "service_unavailable",
            "attempted_backends": len(error.attempted)
        }
    }


async def _relay_frames(
    session: StreamSession,
    model: str,
    message_count: int,
    flavor: ApiFlavor
) -> AsyncIterator[str]:
    try:
        async for frame in stream_chunks(session, model, message_count, flavor):
            yield frame
    finally:
        # Runs on client disconnect too, closing the backend call
        await session.aclose()


async def _dispatch(request: Request, flavor: ApiFlavor):
    app_settings = get_settings(request)
    dispatcher = get_dispatch_service(request)

    body = await read_json_body(request)
    messages = extract_conversation(body)
    tools = normalize_tools(body.get("tools"))
    stream = body.get("stream") is True
    model = body.get("model")
    if not isinstance(model, str) or not model:
        model = app_settings.public_model_id

    logger.info(
        f"Received {flavor} request for model: {model} "
        f"(stream: {stream}, messages: {len(messages)}, tools: {len(tools) if tools else 0})"
    )
    if not messages:
        logger.warning("Request has no usable messages after normalization")

    if stream:
        try:
            session = await dispatcher.open_stream(messages, tools)
        except AllBackendsFailed as e:
            if app_settings.exhaustion_mode == "error":
                raise HTTPException(status_code=503, detail=_exhausted_detail(e))
            return StreamingResponse(
                stream_placeholder(model, len(messages), flavor),
                media_type="text/event-stream",
                headers={**SSE_HEADERS, "X-Served-By": "none"}
            )

        logger.info(f"Returning streaming response from backend: {session.served_by}")
        return StreamingResponse(
            _relay_frames(session, model, len(messages), flavor),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Served-By": session.served_by}
        )

    start_time = time.time()
    try:
        result = await dispatcher.complete(messages, tools)
    except AllBackendsFailed as e:
        if app_settings.exhaustion_mode == "error":
            raise HTTPException(status_code=503, detail=_exhausted_detail(e))
        result = placeholder_result()

    content = compose(result, model, len(messages), flavor)
    content["router"] = {
        "service": result.served_by,
        "duration": round(time.time() - start_time, 3)
    }
    return JSONResponse(content=content, headers={"X-Served-By": result.served_by})


@router.post(
    "/v1/chat/completions",
    summary="Create chat completion",
    description="Creates a model response for the given chat conversation. Supports both regular and streaming responses.",
    dependencies=[Depends(verify_api_key)]
)
@router.post("/v1/chat/completions/", include_in_schema=False, dependencies=[Depends(verify_api_key)])
async def create_chat_completion(request: Request):
    """
    Create a chat completion.

    Compatible with OpenAI's chat completions API; the first backend that
    answers serves the request.
    """
    return await _dispatch(request, "chat")


@router.post(
    "/v1/responses",
    summary="Create response",
    description="Agent oriented variant returning output items and required actions.",
    dependencies=[Depends(verify_api_key)]
)
@router.post("/v1/responses/", include_in_schema=False, dependencies=[Depends(verify_api_key)])
async def create_response(request: Request):
    """Create a response in the responses/agent wire format."""
    return await _dispatch(request, "responses")


@router.get(
    "/v1/models",
    summary="List models",
    dependencies=[Depends(verify_api_key)]
)
async def list_models(request: Request) -> Dict[str, Any]:
    """List the single model this relay advertises."""
    app_settings = get_settings(request)
    models = ModelListResponse(data=[
        ModelInfo(
            id=app_settings.public_model_id,
            created=request.app.state.started_at,
            owned_by="llm-relay"
        )
    ])
    return models.model_dump()


async def _relay_text(dispatcher: DispatchService, messages) -> AsyncIterator[str]:
    try:
        session = await dispatcher.open_stream(messages)
    except AllBackendsFailed:
        yield NO_RESPONSE_TEXT
        return

    try:
        async for delta in session:
            if delta.content:
                yield delta.content
    finally:
        await session.aclose()


@router.post("/chat", summary="Plain text chat", dependencies=[Depends(verify_api_key)])
async def chat(request: Request) -> StreamingResponse:
    """Stream raw text from the first backend that answers, without SSE framing."""
    body = await read_json_body(request)
    messages = extract_conversation(body)
    return StreamingResponse(
        _relay_text(get_dispatch_service(request), messages),
        media_type="text/plain; charset=utf-8"
    )


@router.get("/health", summary="Health check")
async def health_check(request: Request) -> Dict[str, Any]:
    """Health check endpoint listing the configured backends in try order."""
    registry: BackendRegistry = request.app.state.registry
    return {"status": "ok", "services": registry.names()}


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Custom exception handler for HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.detail if isinstance(exc.detail, dict) else {"error": {"message": str(exc.detail)}},
        headers=getattr(exc, "headers", None)
    )


async def invalid_body_handler(request: Request, exc: InvalidRequestBody):
    logger.warning(f"Invalid JSON body on {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=400, content={"error": "Invalid JSON"})


async def general_exception_handler(request: Request, exc: Exception):
    """Custom exception handler for general exceptions."""
    logger.error(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_error"
            }
        }
    )


def create_app(
    app_settings: Optional[Settings] = None,
    registry: Optional[BackendRegistry] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings: Settings to use, defaults to the environment settings
        registry: Backend registry, built from the settings when omitted
    """
    app_settings = app_settings or settings
    if registry is None:
        registry = BackendRegistry.from_settings(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await registry.aclose()

    app = FastAPI(
        title=app_settings.api_title,
        description=app_settings.api_description,
        version=app_settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    cursor = RotationCursor() if app_settings.rotation_strategy == "round_robin" else None
    app.state.settings = app_settings
    app.state.registry = registry
    app.state.dispatcher = DispatchService(registry, cursor)
    app.state.auth = AuthService(app_settings.auth_secret)
    app.state.started_at = int(time.time())
    logger.info(f"Initialized {app.state.dispatcher!r} with backends: {registry.names()}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(InvalidRequestBody, invalid_body_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(router)

    # Static files take whatever the API routes did not match
    if os.path.isdir(app_settings.public_dir):
        app.mount("/", StaticFiles(directory=app_settings.public_dir, html=True), name="public")

    return app


app = create_app()
