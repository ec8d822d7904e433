from __future__ import annotations

from typing import Any

from togglecascade.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Bad request",
        _error_example(code="TENANT_PREDICATE_REQUIRED", message="Tenant predicate required"),
    ),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Resource not found")),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal server error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    503: _response(
        "Service unavailable",
        _error_example(
            code="FEATURE_TOGGLE_FAILED",
            message="Feature toggle failed and was rolled back",
            details={"tenant_id": "tenant_123", "feature_key": "coupons"},
        ),
    ),
}
