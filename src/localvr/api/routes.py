"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from localvr.api.middleware import verify_api_key
from localvr.api.schemas import (
    ClassifiedImages,
    ClassifierInfo,
    ClassifiersResponse,
    ErrorResponse,
    HealthResponse,
    InstalledModel,
    UpdateModelRequest,
)
from localvr.errors import (
    CompileError,
    DownloadError,
    FetchError,
    ImageDecodeError,
    InstallError,
    ModelLoadFailed,
    ModelNotFound,
    NoClassifiersAvailable,
    RemoteError,
    TransportError,
)

if TYPE_CHECKING:
    from localvr.client import LocalVisualRecognition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_client(request: Request) -> LocalVisualRecognition:
    client: LocalVisualRecognition = request.app.state.client
    return client


def _fetch_error_status(exc: FetchError) -> int:
    if isinstance(exc, RemoteError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, TransportError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, DownloadError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, CompileError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, InstallError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_502_BAD_GATEWAY


@router.post(
    "/classify",
    response_model=ClassifiedImages,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
    summary="Classify an image with locally installed classifiers",
)
async def classify(
    request: Request,
    file: UploadFile,
    classifier_ids: Annotated[list[str] | None, Form()] = None,
    threshold: Annotated[float | None, Form(ge=0.0, le=1.0)] = None,
) -> ClassifiedImages | JSONResponse:
    """Run every requested classifier that is installed and merge the results."""
    client = _get_client(request)
    image = await file.read()
    try:
        merged = await client.classify_locally(image, classifier_ids, threshold)
    except ImageDecodeError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})
    except NoClassifiersAvailable as exc:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})
    return ClassifiedImages.model_validate(merged.to_envelope())


@router.get(
    "/classifiers",
    response_model=ClassifiersResponse,
    summary="List installed classifiers",
)
async def list_classifiers(request: Request) -> ClassifiersResponse:
    client = _get_client(request)
    return ClassifiersResponse(classifiers=client.list_installed())


@router.get(
    "/classifiers/{classifier_id}",
    response_model=ClassifierInfo,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Describe an installed classifier",
)
async def get_classifier(request: Request, classifier_id: str) -> ClassifierInfo:
    client = _get_client(request)
    try:
        model = client.get_model(classifier_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ModelNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ModelLoadFailed as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return ClassifierInfo(
        classifier_id=classifier_id,
        name=model.metadata.display_name,
        embedded_classifier_id=model.metadata.classifier_id,
        labels=list(model.metadata.labels),
        stale=client.store.is_stale(classifier_id),
    )


@router.post(
    "/classifiers/{classifier_id}/model",
    response_model=InstalledModel,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
        status.HTTP_504_GATEWAY_TIMEOUT: {"model": ErrorResponse},
    },
    summary="Download and install the latest model for a classifier",
)
async def update_classifier_model(
    request: Request,
    classifier_id: str,
    body: UpdateModelRequest | None = None,
) -> InstalledModel | JSONResponse:
    client = _get_client(request)
    api_key = body.api_key if body is not None else None
    try:
        await client.update_model(classifier_id, api_key)
    except ValueError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})
    except FetchError as exc:
        logger.warning("Model update for %s failed: %s", classifier_id, exc)
        return JSONResponse(status_code=_fetch_error_status(exc), content={"detail": str(exc)})
    return InstalledModel(classifier_id=classifier_id, path=str(client.store.model_path(classifier_id)))


@router.delete(
    "/classifiers/{classifier_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Remove an installed classifier model",
)
async def delete_classifier(request: Request, classifier_id: str) -> None:
    client = _get_client(request)
    try:
        removed = client.evict_model(classifier_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No model installed for {classifier_id}")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    client = _get_client(request)
    return HealthResponse(
        status="ok",
        gpu=client.settings.device == "cuda",
        models_loaded=client.store.get_loaded_models(),
        concurrent_requests=client.pool.active_count,
        queue_depth=client.pool.queue_depth,
    )
