import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AttendanceError(Exception):
    """Base for every failure a request can end with.

    ``extra`` is merged into the JSON body next to the error message, e.g. the
    rounded match score of a rejected face.
    """

    status_code = 500

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_body(self) -> dict:
        return {"ok": False, "error": self.message, **self.extra}


class ValidationFailed(AttendanceError):
    status_code = 400


class Unauthorized(AttendanceError):
    status_code = 401


class Forbidden(AttendanceError):
    status_code = 403


class NotFound(AttendanceError):
    status_code = 404


class Gone(AttendanceError):
    """The thing existed but has lapsed: an expired token or a closed window."""

    status_code = 410


def _first_validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request."
    err = errors[0]
    where = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    return f"{where}: {err.get('msg')}" if where else str(err.get("msg"))


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AttendanceError)
    async def attendance_error(request: Request, exc: AttendanceError):
        return JSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse({"ok": False, "error": _first_validation_message(exc)}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse({"ok": False, "error": "Internal server error"}, status_code=500)
