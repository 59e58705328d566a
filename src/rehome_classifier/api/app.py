from __future__ import annotations

import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..classifier import BatchItem, Classifier
from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, LoadError, new_error, status_for
from ..inference.types import ClassifyOutcome
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..preprocess import ImageSource
from ..request_context import request_id_var
from ..version import get_version
from .schemas import BatchRequest, ClassifyImageRequest, ClassifyResponse


# Exception handlers (module-level to keep app factory simple)
async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    get_logger().error("unhandled_error error=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, rid, message="Internal server error.")
    return JSONResponse(status_code=500, content=body.to_dict())


def _outcome_or_raise(outcome: ClassifyOutcome) -> dict[str, object]:
    if outcome.result is None:
        err = outcome.error
        if err is None:
            raise AppError(ErrorCode.internal_error, 500, "Classification returned no result")
        raise AppError(err.code, status_for(err.code), err.user_message)
    return outcome.result.to_dict()


def _source_from(image_base64: str | None, image_url: str | None) -> ImageSource:
    if image_base64:
        b64 = image_base64.strip()
        # Accept bare base64 as well as data URIs
        return b64 if b64.lower().startswith("data:") else f"data:image/*;base64,{b64}"
    if image_url:
        return image_url.strip()
    raise AppError(
        ErrorCode.bad_request, status_for(ErrorCode.bad_request), "Image data is required"
    )


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise AppError(
            ErrorCode.too_large,
            status_for(ErrorCode.too_large),
            "File exceeds size limit",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg", "image/webp"):
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Only PNG, JPEG and WebP are supported",
        )


def _register_basic(app: FastAPI, classifier: Classifier) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        lc = classifier.lifecycle
        if lc.ready:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "model_loaded": False,
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, classifier: Classifier) -> None:
    async def _model_active() -> dict[str, object]:
        handle = classifier.lifecycle.handle
        if handle is None:
            return {"model_loaded": False, "model_id": None}
        return {
            "model_loaded": True,
            "model_id": handle.model_id,
            "backbone": handle.backbone,
            "cut_layer": handle.cut_layer,
            "labels": list(handle.labels),
            "input_size": handle.input_size,
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _register_classify(
    app: FastAPI,
    dep_api_key: DependsParamType,
    provide_classifier: Callable[[], Classifier],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _classify_upload(
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        classifier = provide_classifier()
        limits = provide_limits()
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None and content_length > limits.max_bytes:
            raise AppError(
                ErrorCode.too_large,
                status_for(ErrorCode.too_large),
                "Request body too large",
            )
        raw = await file.read()
        _raise_if_too_large(raw, limits)
        return await _classify_one(classifier, raw)

    async def _classify_json(body: ClassifyImageRequest) -> dict[str, object]:
        source = _source_from(body.imageBase64, body.imageUrl)
        return await _classify_one(provide_classifier(), source)

    async def _classify_batch(body: BatchRequest) -> dict[str, object]:
        classifier = provide_classifier()
        items = [
            BatchItem(id=it.id, source=_source_from(it.imageBase64, it.imageUrl))
            for it in body.items
        ]
        outcomes = await classifier.classify_many(items)
        results: list[dict[str, object]] = []
        for oc in outcomes:
            if oc.result is not None:
                results.append({"id": oc.correlation_id, "ok": True, "result": oc.result.to_dict()})
            else:
                err = oc.error
                results.append(
                    {
                        "id": oc.correlation_id,
                        "ok": False,
                        "error": {
                            "code": err.code.value if err is not None else "internal_error",
                            "message": err.user_message if err is not None else "",
                        },
                    }
                )
        return {"results": results}

    app.add_api_route(
        "/v1/classify",
        _classify_upload,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[dep_api_key],
    )
    app.add_api_route(
        "/v1/classify-image",
        _classify_json,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[dep_api_key],
    )
    app.add_api_route(
        "/v1/classify/batch",
        _classify_batch,
        methods=["POST"],
        dependencies=[dep_api_key],
    )


async def _classify_one(classifier: Classifier, source: ImageSource) -> dict[str, object]:
    t0 = time.perf_counter()
    outcome = await run_in_threadpool(classifier.classify_image, source, request_id_var.get() or None)
    out = _outcome_or_raise(outcome)
    out["latency_ms"] = int((time.perf_counter() - t0) * 1000.0)
    return out


def create_app(
    settings: Settings | None = None,
    classifier_provider: Callable[[], Classifier] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `classifier_provider`: Optional provider for a custom `Classifier` (primarily for tests).
    """
    s = settings or Settings.load()
    init_logging()
    classifier = classifier_provider() if classifier_provider is not None else Classifier(s)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        if s.classifier.eager_load:
            try:
                await run_in_threadpool(classifier.lifecycle.ensure_loaded)
            except LoadError as exc:
                # Retried lazily on the first request; readyz reports not_ready meanwhile
                get_logger().warning("eager_load_failed kind=%s", exc.kind.value)
        yield
        classifier.close()

    app = FastAPI(title="rehome-classifier", version=get_version().version, lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)

    limits = Limits.from_settings(s)
    api_dep: DependsParamType = Depends(api_key_dependency(s))

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_classifier() -> Classifier:
        return classifier

    def _provide_limits() -> Limits:
        return limits

    # Expose providers for dependency overrides in tests
    app.state.provide_classifier = _provide_classifier
    app.state.provide_limits = _provide_limits

    _register_basic(app, classifier)
    _register_models(app, classifier)
    _register_classify(app, api_dep, _provide_classifier, _provide_limits)
    return app


# Default ASGI app for uvicorn
app = create_app()
