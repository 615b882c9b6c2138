"""Request and response bodies of the serving API."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, model_validator

# JSON numbers only; strings and booleans are rejected rather than coerced
Number = Union[StrictFloat, StrictInt]


class InferenceRequest(BaseModel):
    """Request model for the inference endpoint."""

    model_config = ConfigDict(extra="forbid")

    inputs: List[Union[List[Number], Dict[str, Number]]] = Field(
        ..., description="Rows to score: arrays in feature order or objects keyed by feature name"
    )
    return_probabilities: StrictBool = Field(False, description="Include class probabilities")


class InferenceResponse(BaseModel):
    """Response model for the inference endpoint."""

    model_config = ConfigDict(protected_namespaces=())

    model_name: str = Field(..., description="Model name used")
    model_version: str = Field(..., description="Model version used")
    predictions: List[Any] = Field(..., description="One prediction per input row")
    probabilities: Optional[List[List[float]]] = Field(None, description="Class probabilities per row")
    latency_ms: float = Field(..., description="Inference latency in milliseconds")


class ModelInfo(BaseModel):
    """Model information model."""

    name: str
    version: str
    format: str
    task: str
    n_features: int
    feature_names: Optional[List[str]] = None
    classes: Optional[List[Any]] = None
    artifact: str
    loaded_at: float


class BatchRequest(BaseModel):
    """Request model for batch prediction over a bundled dataset."""

    model_config = ConfigDict(extra="forbid")

    dataset: str = Field(..., min_length=1, description="Dataset file name inside the dataset directory")
    target_column: Optional[str] = Field(None, description="Column excluded from features and used for scoring")
    holdout_ratio: Optional[float] = Field(None, ge=0.0, le=1.0, description="Score only this tail fraction")
    batch_size: Optional[int] = Field(None, gt=0, description="Rows per inference step")
    shuffle: StrictBool = Field(False, description="Shuffle rows before splitting")
    seed: Optional[int] = Field(None, description="Shuffle seed")
    output: Optional[str] = Field(
        None, min_length=1, description="File in the dataset directory to write the scored rows to"
    )

    @model_validator(mode="after")
    def _holdout_needs_target(self) -> "BatchRequest":
        if self.holdout_ratio is not None and self.target_column is None:
            raise ValueError("holdout_ratio requires target_column")
        return self


class BatchResponse(BaseModel):
    """Response model for a queued batch job."""

    model_config = ConfigDict(protected_namespaces=())

    job_id: str = Field(..., description="Batch job ID")
    status: str = Field(..., description="Job status")
    dataset: str = Field(..., description="Dataset being scored")
    model_name: str
    model_version: str


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Envelope of every error response."""

    error: ErrorBody
