from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_image = "invalid_image"
    fetch_failed = "fetch_failed"
    cross_origin_blocked = "cross_origin_blocked"
    unsupported_media_type = "unsupported_media_type"
    too_large = "too_large"
    bad_request = "bad_request"
    classification_failed = "classification_failed"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    service_not_ready = "service_not_ready"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.fetch_failed: "Failed to fetch image.",
    ErrorCode.cross_origin_blocked: "Image origin is not allowed.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.bad_request: "Image data is required.",
    ErrorCode.classification_failed: "Failed to classify image.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.service_not_ready: "Model not loaded yet.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_image:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.bad_request:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.fetch_failed:
        return status.HTTP_502_BAD_GATEWAY
    if code is ErrorCode.cross_origin_blocked:
        return status.HTTP_403_FORBIDDEN
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.service_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Pipeline taxonomy. Each stage raises its own error type carrying a `kind`;
# the public entry point folds them into a single ClassificationError.


class LoadErrorKind(str, Enum):
    network_unavailable = "network_unavailable"
    incompatible_shape = "incompatible_shape"
    out_of_memory = "out_of_memory"


class PreprocessErrorKind(str, Enum):
    decode_failed = "decode_failed"
    fetch_failed = "fetch_failed"
    cross_origin_blocked = "cross_origin_blocked"


class InferErrorKind(str, Enum):
    shape_mismatch = "shape_mismatch"
    model_not_loaded = "model_not_loaded"
    runtime_fault = "runtime_fault"
    timeout = "timeout"


class PipelineError(Exception):
    """Base class for typed failures raised by the classification stages."""

    kind: Enum

    def __init__(self, kind: Enum, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class LoadError(PipelineError):
    kind: LoadErrorKind

    def __init__(self, kind: LoadErrorKind, message: str) -> None:
        super().__init__(kind, message)

    @property
    def retryable(self) -> bool:
        return self.kind is LoadErrorKind.network_unavailable


class PreprocessError(PipelineError):
    kind: PreprocessErrorKind

    def __init__(self, kind: PreprocessErrorKind, message: str) -> None:
        super().__init__(kind, message)


class InferError(PipelineError):
    kind: InferErrorKind

    def __init__(self, kind: InferErrorKind, message: str) -> None:
        super().__init__(kind, message)


class LabelSetMismatch(AssertionError):
    """Distribution width and label set disagree; the model and labels drifted apart."""


class ClassificationError(Exception):
    """Single error surfaced by the public classification entry point."""

    def __init__(self, cause: PipelineError) -> None:
        super().__init__(str(cause))
        self.cause = cause

    @property
    def kind(self) -> Enum:
        return self.cause.kind

    @property
    def user_message(self) -> str:
        return user_message_for(self.cause)

    @property
    def code(self) -> ErrorCode:
        return code_for(self.cause)


def user_message_for(err: PipelineError) -> str:
    if isinstance(err, InferError) and err.kind is InferErrorKind.model_not_loaded:
        return "Model not loaded yet."
    if isinstance(err, LoadError):
        if err.kind is LoadErrorKind.network_unavailable:
            return "Model could not be downloaded. Check the network and try again."
        return "Model failed to load."
    if isinstance(err, PreprocessError):
        if err.kind is PreprocessErrorKind.fetch_failed:
            return "Failed to fetch image."
        if err.kind is PreprocessErrorKind.cross_origin_blocked:
            return "Image origin is not allowed."
        return "Failed to read image. Try a different photo."
    if isinstance(err, InferError) and err.kind is InferErrorKind.timeout:
        return "Classification timed out. Please try again."
    return "Failed to classify image."


def code_for(err: PipelineError) -> ErrorCode:
    if isinstance(err, PreprocessError):
        if err.kind is PreprocessErrorKind.fetch_failed:
            return ErrorCode.fetch_failed
        if err.kind is PreprocessErrorKind.cross_origin_blocked:
            return ErrorCode.cross_origin_blocked
        return ErrorCode.invalid_image
    if isinstance(err, LoadError):
        return ErrorCode.service_not_ready
    if isinstance(err, InferError):
        if err.kind is InferErrorKind.model_not_loaded:
            return ErrorCode.service_not_ready
        if err.kind is InferErrorKind.timeout:
            return ErrorCode.timeout
    return ErrorCode.classification_failed
