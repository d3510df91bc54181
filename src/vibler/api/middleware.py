"""
aiohttp middleware and request helpers for the HTTP error boundary.

error_middleware is the only place where exceptions become responses:
every failure raised by a route handler is classified, logged once and
answered with the formatter's body. Each request is tagged with an
x-request-id (propagated when the client sends one, readable by handlers
through the log context) and its duration is logged and recorded.
"""

import json
import logging
import math
import time
import uuid
from typing import Awaitable, Callable, Dict, Type, TypeVar

import pydantic
from aiohttp import web

from vibler import metrics
from vibler.errors.classifier import classify
from vibler.errors.exceptions import ErrorKind, ValidationError
from vibler.errors.formatter import log_classified_error, to_response
from vibler.logging.context import log_context
from vibler.logging.utilities import log_with_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
MAX_REQUEST_ID_LENGTH = 128

M = TypeVar("M", bound=pydantic.BaseModel)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _request_id(request: web.Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return uuid.uuid4().hex


def _error_headers(request_id: str, retry_after: object) -> Dict[str, str]:
    headers = {REQUEST_ID_HEADER: request_id}
    if isinstance(retry_after, (int, float)):
        headers["Retry-After"] = str(max(0, math.ceil(retry_after)))
    return headers


@web.middleware
async def error_middleware(
    request: web.Request, handler: Handler
) -> web.StreamResponse:
    """Convert handler failures to JSON error responses and log each call."""
    request_id = _request_id(request)
    start = time.perf_counter()

    with log_context(
        request_id=request_id, method=request.method, endpoint=request.path
    ):
        try:
            response = await handler(request)
            response.headers[REQUEST_ID_HEADER] = request_id
        except web.HTTPException as e:
            if e.status < 400:
                # Redirects and other non-error responses pass through
                e.headers[REQUEST_ID_HEADER] = request_id
                raise
            response = _handle_failure(request, e, request_id)
        except Exception as e:
            response = _handle_failure(request, e, request_id)

        duration = time.perf_counter() - start
        metrics.observe_api_request(request.method, response.status, duration)
        log_with_context(
            logger,
            logging.INFO,
            f"{request.method} {request.path}",
            http_status=response.status,
            duration_ms=round(duration * 1000, 2),
            user_agent=request.headers.get("User-Agent"),
        )
        return response


def _handle_failure(
    request: web.Request, exc: Exception, request_id: str
) -> web.Response:
    classified = classify(exc)
    metrics.record_error(classified.kind.value, classified.code)
    log_classified_error(
        logger,
        classified,
        f"{request.method} {request.path} failed: {classified.message}",
        http_status=classified.status_code,
    )

    retry_after = None
    if classified.kind in (ErrorKind.RATE_LIMITED, ErrorKind.UPSTREAM_UNAVAILABLE):
        retry_after = classified.context.get("retry_after")
    headers = _error_headers(request_id, retry_after)
    if isinstance(exc, web.HTTPException) and "Allow" in exc.headers:
        headers["Allow"] = exc.headers["Allow"]
    return to_response(classified).to_json_response(headers=headers)


async def validate_body(request: web.Request, model: Type[M]) -> M:
    """
    Parse and validate a JSON request body against a pydantic model.

    Raises:
        ValidationError: Body is not valid JSON, cannot be decoded with its
            charset, or does not match the model (field errors under
            context["fields"])
    """
    try:
        data = await request.json()
    except json.JSONDecodeError as e:
        raise classify(e) from e
    except UnicodeDecodeError as e:
        raise ValidationError(
            "Request body is not valid text",
            cause=e,
            context={"encoding": e.encoding, "position": e.start},
            code="INVALID_FORMAT",
        ) from e

    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        error = classify(e)
        assert isinstance(error, ValidationError)
        raise error from e
