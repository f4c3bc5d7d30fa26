import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import JobProcessingError, ProviderError
from app.services.error_messages import (
    format_error_message,
    get_error_notification,
    notification_for_job_error,
)
from app.services.error_taxonomy import (
    ErrorCategory,
    categorize_error,
    categorize_provider_error,
    format_job_error,
    parse_job_error,
    transport_error_code,
    validate_dimensions,
    validate_prompt,
)


@pytest.mark.parametrize('status, category', [
    (400, ErrorCategory.API_BAD_REQUEST),
    (401, ErrorCategory.API_UNAUTHORIZED),
    (402, ErrorCategory.CREDITS_INSUFFICIENT),
    (403, ErrorCategory.API_FORBIDDEN),
    (429, ErrorCategory.RATE_LIMITED),
    (500, ErrorCategory.API_SERVER_ERROR),
    (503, ErrorCategory.API_SERVER_ERROR),
])
def test_http_status(status, category):
    error = ProviderError('Provider error', status_code=status)
    assert categorize_error(error).category == category


def test_bad_request_about_size_is_a_dimension_error():
    result = categorize_error(http_status=400, error_message='width must be a multiple of 8')
    assert result.category == ErrorCategory.DIMENSIONS_INVALID


@pytest.mark.parametrize('code', ['ECONNRESET', 'ETIMEDOUT', 'ENOTFOUND', 'ECONNREFUSED'])
def test_network_codes_win_over_status(code):
    error = ProviderError('socket hang up', status_code=500, code=code)
    result = categorize_error(error)
    assert result.category == ErrorCategory.NETWORK_ERROR
    assert result.details['code'] == code


def test_transport_error_codes():
    request = httpx.Request('GET', 'https://provider.test')
    assert transport_error_code(httpx.ReadTimeout('slow', request=request)) == 'ETIMEDOUT'
    assert transport_error_code(httpx.ConnectError('refused', request=request)) == 'ECONNREFUSED'
    assert transport_error_code(httpx.RemoteProtocolError('reset', request=request)) == 'ECONNRESET'
    assert transport_error_code(ValueError('x')) is None


@pytest.mark.parametrize('message, category', [
    ('Insufficient balance on account', ErrorCategory.CREDITS_INSUFFICIENT),
    ('Monthly quota limit exceeded', ErrorCategory.QUOTA_EXCEEDED),
    ('Requested resolution is out of range', ErrorCategory.DIMENSIONS_OUT_OF_RANGE),
    ('aspect ratio not supported', ErrorCategory.DIMENSIONS_INVALID),
    ('Prompt cannot be empty', ErrorCategory.PROMPT_EMPTY),
    ('Prompt generation failed: all models failed', ErrorCategory.PROMPT_GENERATION_FAILED),
    ('Target image not found', ErrorCategory.IMAGE_MISSING),
    ('reference image invalid path', ErrorCategory.IMAGE_PATH_INVALID),
    ('request timed out after 600s', ErrorCategory.TIMEOUT),
    ('Missing provider_request_id in response', ErrorCategory.PROVIDER_ID_MISSING),
    ('malformed provider response', ErrorCategory.REQUEST_MALFORMED),
    ('duplicate key violates unique constraint', ErrorCategory.DATABASE_ERROR),
    ('Too many requests', ErrorCategory.RATE_LIMITED),
    ('something odd happened', ErrorCategory.UNKNOWN),
])
def test_substring_rules(message, category):
    assert categorize_error(error_message=message).category == category


def test_sqlalchemy_errors_are_database_errors():
    error = OperationalError('UPDATE jobs', {}, Exception('server closed the connection'))
    assert categorize_error(error).category == ErrorCategory.DATABASE_ERROR


def test_job_processing_error_passes_through():
    error = JobProcessingError(ErrorCategory.IMAGE_MISSING, 'Target image not found: uploads/u1/x.jpg')
    result = categorize_error(error)
    assert result.category == ErrorCategory.IMAGE_MISSING
    assert result.as_job_error() == 'image_missing: Target image not found: uploads/u1/x.jpg'


def test_provider_envelope_402():
    result = categorize_provider_error({'code': 402, 'message': 'Payment required'})
    assert result.category == ErrorCategory.CREDITS_INSUFFICIENT
    assert result.message == 'Payment required'


def test_provider_envelope_uses_data_error():
    result = categorize_provider_error({'code': 200, 'data': {'status': 'failed', 'error': 'internal server fault'}})
    assert result.category == ErrorCategory.UNKNOWN
    assert result.message == 'internal server fault'


def test_job_error_round_trip_and_legacy():
    value = format_job_error(ErrorCategory.RATE_LIMITED, 'slow down: retry later')
    assert parse_job_error(value) == (ErrorCategory.RATE_LIMITED, 'slow down: retry later')
    assert parse_job_error('stale: auto-cleanup') == (ErrorCategory.UNKNOWN, 'stale: auto-cleanup')
    assert parse_job_error(None) == (ErrorCategory.UNKNOWN, '')


def test_validate_prompt():
    assert validate_prompt(None).category == ErrorCategory.PROMPT_EMPTY
    assert validate_prompt('   ').message == 'Prompt cannot be empty'
    assert validate_prompt('abcd').message == 'Prompt is too short (minimum 5 characters)'
    assert validate_prompt('abcde') is None


def test_validate_dimensions():
    assert validate_dimensions(1024, 4096) is None
    result = validate_dimensions(512, 2048)
    assert result.category == ErrorCategory.DIMENSIONS_OUT_OF_RANGE
    assert result.details == {'width': 512, 'height': 2048}


def test_notifications():
    notification = get_error_notification(
        ErrorCategory.DIMENSIONS_OUT_OF_RANGE,
        details={'width': 512, 'height': 2048}
    )
    assert '512x2048' in notification.description

    credits = notification_for_job_error('credits_insufficient: Insufficient balance')
    assert credits.title

    unknown = get_error_notification(ErrorCategory.UNKNOWN, 'weird provider reply')
    assert unknown.description == 'weird provider reply'

    assert format_error_message(ErrorCategory.RATE_LIMITED, 'slow down').endswith('(slow down)')
