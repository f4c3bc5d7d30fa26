"""
Error categorization for provider, LLM and store failures.

Every failed job stores its error as "<category>: <message>" so that the UI
can pick a notification without re-parsing provider payloads.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import ProviderError, JobProcessingError


class ErrorCategory(str, Enum):
    CREDITS_INSUFFICIENT = 'credits_insufficient'
    QUOTA_EXCEEDED = 'quota_exceeded'
    DIMENSIONS_INVALID = 'dimensions_invalid'
    DIMENSIONS_OUT_OF_RANGE = 'dimensions_out_of_range'
    PROMPT_EMPTY = 'prompt_empty'
    PROMPT_GENERATION_FAILED = 'prompt_generation_failed'
    IMAGE_MISSING = 'image_missing'
    IMAGE_PATH_INVALID = 'image_path_invalid'
    REQUEST_MALFORMED = 'request_malformed'
    NETWORK_ERROR = 'network_error'
    TIMEOUT = 'timeout'
    RATE_LIMITED = 'rate_limited'
    API_BAD_REQUEST = 'api_bad_request'
    API_UNAUTHORIZED = 'api_unauthorized'
    API_FORBIDDEN = 'api_forbidden'
    API_SERVER_ERROR = 'api_server_error'
    PROVIDER_ID_MISSING = 'provider_id_missing'
    DATABASE_ERROR = 'database_error'
    UNKNOWN = 'unknown'


NETWORK_ERROR_CODES = {'ECONNRESET', 'ETIMEDOUT', 'ENOTFOUND', 'ECONNREFUSED'}

MIN_DIMENSION = 1024
MAX_DIMENSION = 4096


@dataclass
class CategorizedError:
    category: ErrorCategory
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def as_job_error(self) -> str:
        return format_job_error(self.category, self.message)


def format_job_error(category: ErrorCategory, message: str) -> str:
    return f'{category.value}: {message}'


def parse_job_error(value: Optional[str]) -> Tuple[ErrorCategory, str]:
    """
    Inverse of format_job_error. Legacy errors without a known prefix are
    reported as UNKNOWN with the full text.
    """
    if not value:
        return ErrorCategory.UNKNOWN, ''

    prefix, sep, rest = value.partition(': ')
    if sep:
        try:
            return ErrorCategory(prefix), rest
        except ValueError:
            pass
    return ErrorCategory.UNKNOWN, value


def transport_error_code(error: BaseException) -> Optional[str]:
    """
    Maps httpx transport failures onto the connection codes the classifier
    and the submit retry policy understand.
    """
    if isinstance(error, httpx.TimeoutException):
        return 'ETIMEDOUT'
    if isinstance(error, httpx.ConnectError):
        text = str(error).lower()
        if 'name or service not known' in text or 'nodename nor servname' in text or 'getaddrinfo' in text:
            return 'ENOTFOUND'
        return 'ECONNREFUSED'
    if isinstance(error, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError)):
        return 'ECONNRESET'
    return None


def _provider_message(data: Any) -> Optional[str]:
    if isinstance(data, dict):
        for key in ('error', 'message', 'detail'):
            value = data.get(key)
            if value:
                return str(value)
    return None


def _contains(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def categorize_error(
        error: Any = None,
        *,
        http_status: Optional[int] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
        response_data: Any = None
) -> CategorizedError:
    """
    Order: connection-level codes, HTTP status, then substring matching over
    the message / provider body. Falls back to UNKNOWN.
    """
    if isinstance(error, JobProcessingError):
        return CategorizedError(error.category, error.message)

    if isinstance(error, ProviderError):
        http_status = http_status or error.status_code
        error_code = error_code or error.code
        response_data = response_data if response_data is not None else error.response_data
    elif isinstance(error, BaseException):
        error_code = error_code or transport_error_code(error)

    message = (
        _provider_message(response_data)
        or (str(error) if isinstance(error, BaseException) and str(error) else None)
        or error_message
        or (str(error) if error is not None else None)
        or 'Unknown error'
    )
    text = message.lower()
    details: Dict[str, Any] = {'http_status': http_status}

    # connection level
    if error_code in NETWORK_ERROR_CODES:
        details['code'] = error_code
        return CategorizedError(ErrorCategory.NETWORK_ERROR, message, details)

    # HTTP status
    if http_status == 400:
        if _contains(text, 'dimension', 'size', 'width', 'height'):
            return CategorizedError(ErrorCategory.DIMENSIONS_INVALID, message, details)
        return CategorizedError(ErrorCategory.API_BAD_REQUEST, message, details)
    if http_status == 401:
        return CategorizedError(ErrorCategory.API_UNAUTHORIZED, message, details)
    if http_status == 402:
        return CategorizedError(ErrorCategory.CREDITS_INSUFFICIENT, message, details)
    if http_status == 403:
        return CategorizedError(ErrorCategory.API_FORBIDDEN, message, details)
    if http_status == 429:
        return CategorizedError(ErrorCategory.RATE_LIMITED, message, details)
    if http_status is not None and 500 <= http_status <= 599:
        return CategorizedError(ErrorCategory.API_SERVER_ERROR, message, details)

    # credits / quota
    if _contains(text, 'insufficient', 'balance', 'quota', 'credit', 'payment', 'billing', 'account suspended'):
        if _contains(text, 'quota', 'limit exceeded'):
            return CategorizedError(ErrorCategory.QUOTA_EXCEEDED, message, details)
        return CategorizedError(ErrorCategory.CREDITS_INSUFFICIENT, message, details)

    # dimensions
    if _contains(text, 'dimension', 'size', 'width', 'height', 'aspect ratio', 'resolution'):
        if _contains(text, 'out of range', 'invalid range'):
            return CategorizedError(ErrorCategory.DIMENSIONS_OUT_OF_RANGE, message, details)
        return CategorizedError(ErrorCategory.DIMENSIONS_INVALID, message, details)

    # prompt
    if 'prompt' in text:
        if _contains(text, 'generation failed', 'failed to generate'):
            return CategorizedError(ErrorCategory.PROMPT_GENERATION_FAILED, message, details)
        return CategorizedError(ErrorCategory.PROMPT_EMPTY, message, details)

    # images
    if _contains(text, 'image', 'target', 'reference'):
        if _contains(text, 'not found', 'missing', 'cannot be accessed', 'does not exist'):
            return CategorizedError(ErrorCategory.IMAGE_MISSING, message, details)
        if _contains(text, 'invalid path', 'path failed', 'normalize', 'invalid image path'):
            return CategorizedError(ErrorCategory.IMAGE_PATH_INVALID, message, details)

    # timeouts, including our own age-based policies
    if _contains(text, 'timeout', 'timed out', 'stuck', 'no provider request id', 'submitted without provider'):
        return CategorizedError(ErrorCategory.TIMEOUT, message, details)

    if _contains(text, 'no provider', 'provider id', 'provider_request_id', 'request id'):
        return CategorizedError(ErrorCategory.PROVIDER_ID_MISSING, message, details)

    if _contains(text, 'malformed', 'invalid request', 'bad request', 'invalid payload'):
        return CategorizedError(ErrorCategory.REQUEST_MALFORMED, message, details)

    pgcode = getattr(getattr(error, 'orig', None), 'pgcode', None) or ''
    if (
        isinstance(error, SQLAlchemyError)
        or str(pgcode).startswith('23')
        or _contains(text, 'database', 'sql', 'constraint', 'foreign key')
    ):
        return CategorizedError(ErrorCategory.DATABASE_ERROR, message, details)

    if _contains(text, 'rate limit', 'too many requests'):
        return CategorizedError(ErrorCategory.RATE_LIMITED, message, details)

    details['code'] = error_code
    return CategorizedError(ErrorCategory.UNKNOWN, message, details)


def categorize_provider_error(response: Optional[Dict[str, Any]], error: Any = None) -> CategorizedError:
    """
    Provider envelope: {code, message, data: {status, error, ...}}.
    """
    response = response or {}
    code = response.get('code')
    data = response.get('data') if isinstance(response.get('data'), dict) else {}
    message = data.get('error') or response.get('message') or response.get('error')

    if code in (402, 'PAYMENT_REQUIRED'):
        return CategorizedError(
            ErrorCategory.CREDITS_INSUFFICIENT,
            str(message or 'Insufficient credits'),
            {'code': code}
        )

    http_status = code if isinstance(code, int) and code >= 400 else None
    return categorize_error(
        error,
        http_status=http_status,
        error_message=str(message) if message else 'provider failed',
        response_data=data or None
    )


def validate_dimensions(width: int, height: int) -> Optional[CategorizedError]:
    if not (MIN_DIMENSION <= width <= MAX_DIMENSION and MIN_DIMENSION <= height <= MAX_DIMENSION):
        return CategorizedError(
            ErrorCategory.DIMENSIONS_OUT_OF_RANGE,
            f'Dimensions must be between {MIN_DIMENSION} and {MAX_DIMENSION} pixels. Got {width}x{height}',
            {'width': width, 'height': height}
        )
    return None


def validate_prompt(prompt: Optional[str]) -> Optional[CategorizedError]:
    if not prompt or not prompt.strip():
        return CategorizedError(ErrorCategory.PROMPT_EMPTY, 'Prompt cannot be empty')
    if len(prompt.strip()) < 5:
        return CategorizedError(ErrorCategory.PROMPT_EMPTY, 'Prompt is too short (minimum 5 characters)')
    return None
