from __future__ import annotations

import logging
import os
import time
import uuid
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.config import get_settings
from app.middlewares.body_guard import BodyGuardMiddleware
from app.schemas import (
    DownloadItemModel,
    ErrorResponse,
    GenerateImageRequest,
    GenerateImageResponse,
    GenerateObjectRequest,
    GenerateObjectResponse,
    GenerateVideoRequest,
    GenerateVideoResponse,
    RenderItemModel,
    inline_json_schema,
)
from app.services.image_generation import ImageGenerationService
from app.services.object_generation import (
    ObjectGenerationResult,
    ObjectGenerationService,
    build_object_service,
)
from app.services.object_providers.errors import (
    GenerationFailed,
    InvalidInput,
    ProviderConfigMissing,
    ProviderError,
)
from app.services.object_request import normalize_request
from app.services.storage_bridge import BlobStorage
from app.services.video_generation import VideoGenerationService

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logging.getLogger("uvicorn").setLevel(LOG_LEVEL)
logging.getLogger("uvicorn.error").setLevel(LOG_LEVEL)
logging.getLogger("uvicorn.access").setLevel(LOG_LEVEL)
logging.getLogger("generation-service").setLevel(LOG_LEVEL)

logger = logging.getLogger("generation-service")

settings = get_settings()
app = FastAPI(title="Generation Service API", version="1.0.0")

app.add_middleware(BodyGuardMiddleware, max_bytes=settings.guard.max_body_bytes)
logger.info("BodyGuardMiddleware ready", extra={"max_body_bytes": settings.guard.max_body_bytes})

cors_allow_origins = settings.allowed_origins or ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials="*" not in cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)


@app.get("/", include_in_schema=False)
def root() -> dict[str, Any]:
    return {"service": "generation-service", "ok": True}


@app.head("/", include_in_schema=False)
def root_head() -> Response:
    return Response(status_code=200)


@app.get("/health")
def health() -> dict[str, bool]:
    return {"ok": True}


@lru_cache(maxsize=1)
def get_storage() -> BlobStorage:
    return BlobStorage()


@lru_cache(maxsize=1)
def get_object_service() -> ObjectGenerationService:
    # one instance per process so the Replicate version cache is shared
    return build_object_service(get_settings(), get_storage())


@lru_cache(maxsize=1)
def get_image_service() -> ImageGenerationService:
    current = get_settings()
    return ImageGenerationService(
        current.openai,
        get_storage(),
        replicate=current.replicate,
        merse=current.merse_image,
    )


@lru_cache(maxsize=1)
def get_video_service() -> VideoGenerationService:
    current = get_settings()
    return VideoGenerationService(current.replicate, get_storage(), models=current.video_models)


def _error(status_code: int, message: str, details: list[str] | None = None) -> JSONResponse:
    payload = ErrorResponse(error=message, details=details or None)
    return JSONResponse(payload.model_dump(exclude_none=True), status_code=status_code)


def _object_response(result: ObjectGenerationResult) -> GenerateObjectResponse:
    return GenerateObjectResponse(
        provider=result.provider,
        providers_tried=result.providers_tried,
        renders=[RenderItemModel(**item.as_dict()) for item in result.renders],
        downloads=[DownloadItemModel(**item.as_dict()) for item in result.downloads] or None,
        notes=result.notes or None,
    )


def _documented_body(model: type) -> dict[str, Any]:
    # handlers read the raw body themselves, so the schema is attached by hand
    schema = inline_json_schema(model)
    return {"requestBody": {"required": True, "content": {"application/json": {"schema": schema}}}}


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidInput("Request body must be valid JSON.") from exc


@app.post(
    "/api/generate-object",
    response_model=GenerateObjectResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    openapi_extra=_documented_body(GenerateObjectRequest),
)
@app.post("/api/v1/object", include_in_schema=False)
async def api_generate_object(
    request: Request,
    service: ObjectGenerationService = Depends(get_object_service),
) -> Response:
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
    started = time.time()

    try:
        generation_request = normalize_request(await _json_body(request))
    except InvalidInput as exc:
        return _error(400, str(exc))

    logger.info(
        "[object] rid=%s prompt_len=%s material=%s lighting=%s detail=%s product_ref=%s brand_ref=%s",
        rid,
        len(generation_request.prompt),
        generation_request.material,
        generation_request.lighting,
        generation_request.detail,
        generation_request.product_reference is not None,
        generation_request.brand_reference is not None,
    )

    try:
        result = await service.generate(generation_request)
    except GenerationFailed as exc:
        logger.error("[object] rid=%s failed details=%s", rid, exc.details)
        return _error(500, str(exc), exc.details)

    logger.info(
        "[object] rid=%s provider=%s tried=%s renders=%s downloads=%s dur_ms=%s",
        rid,
        result.provider,
        result.providers_tried,
        len(result.renders),
        len(result.downloads),
        int((time.time() - started) * 1000),
    )
    payload = _object_response(result)
    return JSONResponse(payload.model_dump(by_alias=True, exclude_none=True))


@app.post(
    "/api/generate-image",
    response_model=GenerateImageResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    openapi_extra=_documented_body(GenerateImageRequest),
)
async def api_generate_image(
    request: Request,
    service: ImageGenerationService = Depends(get_image_service),
) -> Response:
    try:
        body = GenerateImageRequest.model_validate(await _json_body(request))
    except (InvalidInput, ValidationError) as exc:
        return _error(400, "Provide a valid prompt to generate the image.", [str(exc)[:300]])

    try:
        result = await service.generate(
            body.prompt,
            count=body.count,
            aspect_ratio=body.aspect_ratio,
            stylization=body.stylization,
            provider=body.provider,
            reference_image=body.reference_image,
        )
    except InvalidInput as exc:
        return _error(400, str(exc))
    except ProviderConfigMissing as exc:
        logger.error("Image provider not configured: %s", exc)
        return _error(500, str(exc))
    except ProviderError as exc:
        return _error(500, f"Image generation failed: {exc.message}")

    payload = GenerateImageResponse(
        image_url=result.image_url,
        images=result.images,
        seeds=result.seeds,
        provider=result.provider,
    )
    return JSONResponse(payload.model_dump(by_alias=True))


@app.post(
    "/api/generate-video",
    response_model=GenerateVideoResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    openapi_extra=_documented_body(GenerateVideoRequest),
)
async def api_generate_video(
    request: Request,
    service: VideoGenerationService = Depends(get_video_service),
) -> Response:
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]
    started = time.time()

    try:
        body = GenerateVideoRequest.model_validate(await _json_body(request))
    except (InvalidInput, ValidationError) as exc:
        return _error(400, "Provide a valid prompt to generate the video.", [str(exc)[:300]])

    try:
        result = await service.generate(
            body.prompt,
            provider=body.provider,
            aspect_ratio=body.aspect_ratio,
            duration=body.duration,
            reference_image=body.reference_image,
        )
    except InvalidInput as exc:
        return _error(400, str(exc))
    except ProviderConfigMissing as exc:
        logger.error("[video] rid=%s provider not configured: %s", rid, exc)
        return _error(500, str(exc))
    except ProviderError as exc:
        logger.error("[video] rid=%s failed: %s", rid, exc)
        return _error(500, f"Video generation failed: {exc.message}")

    logger.info(
        "[video] rid=%s provider=%s duration=%s dur_ms=%s",
        rid,
        result.provider,
        result.duration,
        int((time.time() - started) * 1000),
    )
    payload = GenerateVideoResponse(
        video_url=result.video_url,
        cover=result.cover,
        duration=result.duration,
        provider=result.provider,
    )
    return JSONResponse(payload.model_dump(by_alias=True, exclude_none=True))
