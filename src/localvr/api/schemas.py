"""Pydantic request/response schemas for the localvr API.

``ClassifiedImages`` mirrors the remote visual-recognition service's
classification response field for field.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ClassScore(BaseModel):
    """A single class with its confidence score."""

    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(alias="class")
    score: float = Field(ge=0.0, le=1.0)


class ClassifierResultSchema(BaseModel):
    """Classes returned by one classifier."""

    name: str
    classifier_id: str
    classes: list[ClassScore]


class ClassifiedImage(BaseModel):
    """Results for one image."""

    source_url: str = ""
    resolved_url: str = ""
    image: str = ""
    error: str = ""
    classifiers: list[ClassifierResultSchema]


class ClassifiedImages(BaseModel):
    """Response for the classify endpoint."""

    images: list[ClassifiedImage]
    warning: list[str] = Field(default_factory=list)


class UpdateModelRequest(BaseModel):
    """Body for the model update endpoint."""

    api_key: str | None = Field(default=None, description="Remote service key; defaults to the configured one")


class InstalledModel(BaseModel):
    """Result of installing a classifier model."""

    classifier_id: str
    path: str


class ClassifierInfo(BaseModel):
    """Metadata of an installed classifier."""

    classifier_id: str
    name: str
    embedded_classifier_id: str
    labels: list[str]
    stale: bool


class ClassifiersResponse(BaseModel):
    """Installed classifier ids."""

    classifiers: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
