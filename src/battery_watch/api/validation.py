"""
Request validation and error handling for Battery Watch API.

This module provides decorators and utilities for query validation and
JSON-API error documents.
"""

from __future__ import annotations

import logging
import uuid
from functools import wraps
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

from flask import request
from marshmallow import Schema, ValidationError

logger = logging.getLogger("battery_watch.api.validation")


class APIError(Exception):
    """General API error exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str | None = None,
        source: dict[str, Any] | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize APIError.

        Args:
            message: Error message
            status_code: HTTP status code
            error_code: Application-specific error code
            source: Error source information
            meta: Additional error metadata
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.source = source
        self.meta = meta


def format_validation_errors(errors: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Format marshmallow validation errors of query parameters as JSON-API errors.

    Args:
        errors: Marshmallow validation messages keyed by parameter

    Returns:
        List of formatted error objects
    """
    formatted_errors = []
    for parameter, messages in errors.items():
        if not isinstance(messages, list):
            messages = [messages]
        for message in messages:
            formatted_errors.append(
                {
                    "id": str(uuid.uuid4()),
                    "status": "400",
                    "code": "VALIDATION_ERROR",
                    "title": "Validation Error",
                    "detail": str(message),
                    "source": {"parameter": parameter},
                },
            )
    return formatted_errors


def format_error_response(
    message: str,
    status_code: int = 400,
    error_code: str | None = None,
    source: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], int]:
    """
    Format a single error into JSON-API error response.

    Args:
        message: Error message
        status_code: HTTP status code
        error_code: Application-specific error code
        source: Error source information
        meta: Additional error metadata

    Returns:
        Tuple of (error response dict, status code)
    """
    error: dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "status": str(status_code),
        "title": get_error_title(status_code),
        "detail": message,
    }

    if error_code:
        error["code"] = error_code
    if source:
        error["source"] = source
    if meta:
        error["meta"] = meta

    return {"errors": [error]}, status_code


def get_error_title(status_code: int) -> str:
    """Get the HTTP reason phrase used as a JSON-API error title."""
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def validate_query_params(schema: type[Schema]) -> Callable:
    """
    Validate query parameters using marshmallow schema.

    Args:
        schema: Marshmallow schema class for validation

    Returns:
        Decorator function
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                validated_params = schema().load(request.args.to_dict())
            except ValidationError as e:
                logger.warning("Query parameter validation error: %s", e.messages)
                return {"errors": format_validation_errors(e.messages)}, 400
            kwargs["validated_params"] = validated_params
            return func(*args, **kwargs)

        return wrapper

    return decorator


def handle_api_errors(func: Callable) -> Callable:
    """
    Handle API exceptions and format error responses.

    Args:
        func: Function to wrap

    Returns:
        Wrapped function with error handling
    """

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except APIError as e:
            logger.warning("API error: %s", e.message)
            return format_error_response(
                e.message,
                e.status_code,
                e.error_code,
                e.source,
                e.meta,
            )
        except Exception:
            logger.exception("Unexpected error in API endpoint")
            return format_error_response(
                "An unexpected error occurred",
                500,
                "INTERNAL_ERROR",
            )

    return wrapper
