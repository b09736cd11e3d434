# FILE: hospital_billing/api/exception_handlers.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hospital_billing.services.billing_errors import (
    BillingError,
    DuplicateBillingError,
)
from hospital_billing.utils.resp import err, ok

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DuplicateBillingError)
    async def duplicate_handler(request: Request,
                                exc: DuplicateBillingError) -> JSONResponse:
        # already billed: a no-op success for the caller
        return ok(
            {
                "duplicate": True,
                "message": str(exc),
                "bill_id": exc.bill_id,
                "bill_item_id": exc.bill_item_id,
            },
            status_code=exc.status_code,
        )

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request,
                                        exc: BillingError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Billing failure on %s: %s", request.url.path, exc)
        return err(msg=str(exc),
                   status_code=exc.status_code,
                   code=type(exc).__name__)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
            request: Request, exc: StarletteHTTPException) -> JSONResponse:
        # exc.detail can be str/dict/list
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return err(msg=msg, status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
            request: Request, exc: RequestValidationError) -> JSONResponse:
        first = (exc.errors() or [{}])[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        msg = first.get("msg") or "Validation error"
        return err(msg=f"{where}: {msg}" if where else msg, status_code=422)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request,
                                          exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return err(msg="Internal server error", status_code=500)
