"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from classifyx.api.dependencies import get_inference_pool, get_model_manager, get_settings, verify_api_key
from classifyx.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from classifyx.ml.errors import IMAGE_ERROR_KINDS, ClassifierError
from classifyx.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from classifyx.ml.image_classifier import ClassificationResult
    from classifyx.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _error(status_code: int, detail: str, kind: str | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "kind": kind})


UPLOAD_CHUNK_SIZE = 1024 * 1024


async def read_limited(file: UploadFile, limit: int) -> bytes | None:
    """Read an upload, or return None as soon as it is known to exceed ``limit`` bytes."""
    if file.size is not None and file.size > limit:
        return None

    chunks: list[bytes] = []
    total = 0
    while chunk := await file.read(UPLOAD_CHUNK_SIZE):
        total += len(chunk)
        if total > limit:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def _classify(
    manager: ModelManager,
    model_name: str,
    image_bytes: bytes,
    max_pixels: int,
) -> list[ClassificationResult]:
    image = decode_image(image_bytes, max_pixels)
    return manager.get_classifier(model_name).classify(image)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: Annotated[UploadFile, File()],
    model: Annotated[str | None, Query(description="Registered model name; defaults to the configured model")] = None,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = get_settings(request)
    manager = get_model_manager(request)
    pool = get_inference_pool(request)

    model_name = model or settings.model_name
    if model_name not in {spec.name for spec in manager.list_models()}:
        return _error(status.HTTP_404_NOT_FOUND, f"Unknown model: {model_name}")

    contents = await read_limited(file, settings.max_file_size)
    if contents is None:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"File exceeds the {settings.max_file_size} byte limit",
        )

    try:
        results = await pool.run(_classify, manager, model_name, contents, settings.max_image_pixels)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, retry later")
    except ValueError as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))
    except FileNotFoundError as exc:
        logger.error("Model %s unavailable: %s", model_name, exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Model {model_name} is not available")
    except ClassifierError as exc:
        if exc.kind in IMAGE_ERROR_KINDS:
            return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), exc.kind)
        logger.error("Classification with %s failed (%s): %s", model_name, exc.kind, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), exc.kind)

    return ClassifyImageResponse(
        model=model_name,
        tags=[ImageTag(label=r.label, confidence=min(max(r.confidence, 0.0), 1.0), index=r.index) for r in results],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    stats = get_inference_pool(request).stats()
    return HealthResponse(
        status="ok",
        models_loaded=get_model_manager(request).get_loaded_models(),
        concurrent_requests=stats.active,
        queue_depth=stats.queued,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List registered models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered models and whether each is currently loaded."""
    settings = get_settings(request)
    manager = get_model_manager(request)
    loaded = set(manager.get_loaded_models())

    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                source=spec.repo_id or "local",
                status="loaded" if spec.name in loaded else "available",
                default=spec.name == settings.model_name,
            )
            for spec in manager.list_models()
        ]
    )
