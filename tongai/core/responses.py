from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from tongai.core.i18n import t, get_locale_from_header


def request_locale(request: Request) -> str:
    """Locale for server messages, taken from Accept-Language."""
    return get_locale_from_header(request.headers.get("Accept-Language"))


def localized_error_response(
    request: Request,
    error_key: str,
    status_code: int = 400,
    **kwargs
) -> JSONResponse:
    """
    Create a localized error response.

    Args:
        request: FastAPI request object
        error_key: Translation key for error message
        status_code: HTTP status code
        **kwargs: Additional format parameters

    Returns:
        JSONResponse with localized error message
    """
    message = t(error_key, request_locale(request), **kwargs)

    return JSONResponse(
        status_code=status_code,
        content={"detail": message}
    )


def localized_http_exception(
    request: Request,
    error_key: str,
    status_code: int = 400,
    **kwargs
) -> HTTPException:
    """Same message as localized_error_response, as an exception for routers to raise."""
    return HTTPException(
        status_code=status_code,
        detail=t(error_key, request_locale(request), **kwargs),
    )
