from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class ClaimError(Exception):
    """
    The capacity claim procedure failed. The only dispatcher error that
    reaches the caller.
    """


class ProviderError(Exception):
    """
    Failed call to the image synthesis provider.
    status_code / code / response_data mirror what the HTTP layer returned.
    """

    def __init__(
            self,
            message: str,
            *,
            status_code: int | None = None,
            code: str | None = None,
            response_data: Any = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response_data = response_data


class JobProcessingError(Exception):
    """
    Per-job failure with a category already decided by the caller.
    """

    def __init__(self, category, message: str):
        super().__init__(message)
        self.category = category
        self.message = message


class PromptGenerationError(Exception):
    pass


def install_exception_handlers(app):
    @app.exception_handler(ClaimError)
    async def claim_error_handler(request: Request, exc: ClaimError):
        return JSONResponse({'error': 'claim failed'}, status_code=500)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({'error': exc.detail}, status_code=exc.status_code)
