from __future__ import annotations

from typing import Any

from tenantadmin.apps.api.response import ErrorEnvelope


def _documented(description: str, code: str, message: str) -> dict[str, Any]:
    example = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _documented("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _documented("Forbidden", "AUTH_FORBIDDEN", "Missing 'editor' on project"),
    404: _documented("Not found", "NOT_FOUND", "Project not found"),
    409: _documented("Conflict", "CONFLICT", "Project was modified concurrently"),
    422: _documented("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _documented("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _documented("Service unavailable", "RELATIONSHIP_STORE_UNAVAILABLE", "Relationship store unavailable"),
}
