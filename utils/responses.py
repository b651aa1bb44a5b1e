from fastapi.responses import JSONResponse

from services.errors import (
    AlreadySubscribedError,
    AlreadyUsedError,
    BillingError,
    NotFoundError,
    ProviderUnavailableError,
    QuotaExhaustedError,
    SignatureError,
)


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data or {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data or {},
            "error": error_code,
            "message": message,
        }
    )


# error class -> (error code, HTTP status); first match wins
_ERROR_MAP = [
    (NotFoundError, "NOT_FOUND", 404),
    (AlreadyUsedError, "TRIAL_ALREADY_USED", 409),
    (AlreadySubscribedError, "ALREADY_SUBSCRIBED", 409),
    (QuotaExhaustedError, "QUOTA_EXHAUSTED", 402),
    (SignatureError, "INVALID_SIGNATURE", 400),
    (ProviderUnavailableError, "BILLING_UNAVAILABLE", 503),
]


def billing_error_response(error: BillingError):
    for error_class, code, status in _ERROR_MAP:
        if isinstance(error, error_class):
            return error_response(code, status, str(error))
    return error_response("BILLING_ERROR", 400, str(error))
