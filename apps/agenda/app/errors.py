import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from agenda_shared import get_request_id

log = logging.getLogger("agenda.errors")


class AgendaError(Exception):
    """Base class for scheduling errors. Services raise these, never HTTPException."""

    code: str = "agenda_error"
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


class ValidationError(AgendaError):
    code = "validation_error"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class UnauthorizedError(AgendaError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AgendaError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AgendaError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AgendaError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class OverlapError(ConflictError):
    code = "overlap"


class AlreadyBookedError(ConflictError):
    code = "already_booked"


class AlreadyCancelledError(ConflictError):
    code = "already_cancelled"


class AlreadyCompletedError(ConflictError):
    code = "already_completed"


class SlotBookedError(ConflictError):
    code = "slot_booked"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


def _problem(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": status_code, "code": code, "message": message}
    if details:
        body["details"] = details
    body["requestId"] = get_request_id()
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AgendaError)
    async def _handle_agenda_error(req: Request, exc: AgendaError):
        log.info(
            "request rejected",
            extra={"path": req.url.path, "error_code": exc.code, "status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=_problem(exc.status_code, exc.code, exc.message, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def _handle_request_validation(req: Request, exc: RequestValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        return JSONResponse(
            status_code=code,
            content=_problem(code, "validation_error", "invalid request", {"errors": _errors(exc)}),
        )

    @app.exception_handler(PydanticValidationError)
    async def _handle_pydantic_validation(req: Request, exc: PydanticValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        return JSONResponse(
            status_code=code,
            content=_problem(code, "validation_error", "invalid request", {"errors": _errors(exc)}),
        )

    @app.exception_handler(Exception)
    async def _handle_unexpected(req: Request, exc: Exception):
        log.exception("unhandled error", extra={"path": req.url.path})
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=code, content=_problem(code, "internal_error", "internal server error"))


def _errors(exc) -> list:
    # ctx may hold exception instances which are not JSON serialisable
    out = []
    for e in exc.errors():
        out.append({"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")})
    return out
