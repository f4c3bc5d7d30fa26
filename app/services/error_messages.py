from typing import Any, Dict, NamedTuple, Optional

from app.services.error_taxonomy import ErrorCategory, MIN_DIMENSION, MAX_DIMENSION, parse_job_error


class ErrorNotification(NamedTuple):
    title: str
    description: str
    action: str


NOTIFICATIONS: Dict[ErrorCategory, ErrorNotification] = {
    ErrorCategory.CREDITS_INSUFFICIENT: ErrorNotification(
        'Insufficient Credits',
        'Your account does not have enough credits to complete this generation. Please add credits to your account.',
        'Add credits to continue'
    ),
    ErrorCategory.QUOTA_EXCEEDED: ErrorNotification(
        'Quota Exceeded',
        'You have reached your generation quota limit. Please wait or upgrade your plan.',
        'Check your plan limits'
    ),
    ErrorCategory.DIMENSIONS_INVALID: ErrorNotification(
        'Invalid Dimensions',
        f'The image dimensions are invalid. Dimensions must be between {MIN_DIMENSION} and {MAX_DIMENSION} pixels on each side.',
        'Adjust dimensions and try again'
    ),
    ErrorCategory.PROMPT_EMPTY: ErrorNotification(
        'Missing Prompt',
        'No prompt was provided for this generation. Please add a prompt before generating.',
        'Add a prompt and try again'
    ),
    ErrorCategory.PROMPT_GENERATION_FAILED: ErrorNotification(
        'Prompt Generation Failed',
        'The AI prompt generation service encountered an error. Please try using a manual prompt instead.',
        'Enter a manual prompt'
    ),
    ErrorCategory.IMAGE_MISSING: ErrorNotification(
        'Image Not Found',
        'The required image file could not be found or accessed. The file may have been deleted or moved.',
        'Re-upload the image and try again'
    ),
    ErrorCategory.IMAGE_PATH_INVALID: ErrorNotification(
        'Invalid Image Path',
        'The image path is invalid or corrupted. Please re-upload the image.',
        'Re-upload the image'
    ),
    ErrorCategory.REQUEST_MALFORMED: ErrorNotification(
        'Invalid Request',
        'The generation request is malformed or missing required information.',
        'Check your settings and try again'
    ),
    ErrorCategory.NETWORK_ERROR: ErrorNotification(
        'Network Error',
        'A network connection error occurred. Please check your internet connection and try again.',
        'Retry the generation'
    ),
    ErrorCategory.TIMEOUT: ErrorNotification(
        'Request Timed Out',
        'The generation request took too long to process and timed out. This may be due to high server load.',
        'Try again in a few moments'
    ),
    ErrorCategory.RATE_LIMITED: ErrorNotification(
        'Rate Limit Exceeded',
        'Too many requests have been made. Please wait a moment before trying again.',
        'Wait a few seconds and retry'
    ),
    ErrorCategory.API_BAD_REQUEST: ErrorNotification(
        'Invalid Request',
        'The request was rejected by the API. Please check your settings and try again.',
        'Review your generation settings'
    ),
    ErrorCategory.API_UNAUTHORIZED: ErrorNotification(
        'Authentication Failed',
        'The API authentication failed. Please contact support if this issue persists.',
        'Contact support'
    ),
    ErrorCategory.API_FORBIDDEN: ErrorNotification(
        'Access Forbidden',
        'You do not have permission to perform this action. Please check your account permissions.',
        'Check your account access'
    ),
    ErrorCategory.API_SERVER_ERROR: ErrorNotification(
        'Server Error',
        'The generation service encountered an internal error. Please try again in a few moments.',
        'Retry the generation'
    ),
    ErrorCategory.PROVIDER_ID_MISSING: ErrorNotification(
        'Generation Failed to Start',
        'The generation job could not be started. The service may be experiencing issues.',
        'Try again in a few moments'
    ),
    ErrorCategory.DATABASE_ERROR: ErrorNotification(
        'Database Error',
        'A database error occurred while processing your request. Please try again.',
        'Retry the operation'
    ),
}


def get_error_notification(
        category: ErrorCategory,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
) -> ErrorNotification:
    details = details or {}

    if category == ErrorCategory.DIMENSIONS_OUT_OF_RANGE:
        width = details.get('width') or '?'
        height = details.get('height') or '?'
        return ErrorNotification(
            'Dimensions Out of Range',
            f'The requested dimensions ({width}x{height}) are outside the valid range. '
            f'Dimensions must be between {MIN_DIMENSION} and {MAX_DIMENSION} pixels.',
            f'Adjust dimensions to be within {MIN_DIMENSION}-{MAX_DIMENSION} pixels'
        )

    notification = NOTIFICATIONS.get(category)
    if notification:
        return notification

    # unknown: показываем исходное сообщение, если оно есть
    return ErrorNotification(
        'Generation Failed',
        message or 'An unexpected error occurred. Please try again or contact support if the issue persists.',
        'Try again or contact support'
    )


def format_error_message(category: ErrorCategory, message: Optional[str] = None, details=None) -> str:
    """
    Описание категории + короткое исходное сообщение в скобках.
    """
    notification = get_error_notification(category, message, details)
    if message and len(message) < 100 and message not in notification.description:
        return f'{notification.description} ({message})'
    return notification.description


def notification_for_job_error(error: Optional[str]) -> ErrorNotification:
    category, message = parse_job_error(error)
    return get_error_notification(category, message)
