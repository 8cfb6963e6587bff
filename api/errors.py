"""Maps SettlementError kinds to HTTP status codes. Every error body is {"error": kind, "message": text}."""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from services.errors import SettlementError

logger = logging.getLogger("bochica.api")

ERROR_STATUS = {
    "validation": 400,
    "unauthorized": 403,
    "not_found": 404,
    "precondition": 409,
    "concurrency": 409,
    "custody_integrity": 500,
    "ledger": 502,
    "custody_unavailable": 503,
    "timeout": 504,
}


def error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "message": message})


async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed ({exc.kind}): {exc.message}")
    return error_response(status_code, exc.kind, exc.message)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return error_response(400, "validation", "; ".join(problems) or "Invalid request")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SettlementError, settlement_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
