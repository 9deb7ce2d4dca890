import logging
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from price_reducer import __version__
from price_reducer.config import settings
from price_reducer.errors import (
    AuthError,
    ConflictError,
    MarketplaceRejection,
    PriceReducerError,
    TransientError,
    ValidationError,
)
from price_reducer.routers import price_reducer
from price_reducer.utils.logger import logger

app = FastAPI(title="eBay Price Reducer API", version=__version__)

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Most specific class first; the first isinstance match wins.
ERROR_STATUS_CODES = (
    (ValidationError, 422),
    (AuthError, 401),
    (ConflictError, 409),
    (MarketplaceRejection, 502),
    (TransientError, 503),
)


def status_code_for(exc: PriceReducerError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return code
    return 500


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    resp = await call_next(request)
    logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
    resp.headers["X-Request-ID"] = rid
    return resp


@app.exception_handler(PriceReducerError)
async def price_reducer_error_handler(request: Request, exc: PriceReducerError):
    status_code = status_code_for(exc)
    logger.warning(
        "%s %s failed with %s (%s): %s",
        request.method, request.url.path, type(exc).__name__, status_code, exc.message,
    )
    headers = None
    if isinstance(exc, TransientError) and exc.retry_after:
        headers = {"Retry-After": str(int(exc.retry_after))}
    return JSONResponse(exc.to_dict(), status_code=status_code, headers=headers)


@app.exception_handler(LookupError)
async def not_found_handler(request: Request, exc: LookupError):
    return JSONResponse({"code": "not_found", "message": str(exc).strip("'\"")}, status_code=404)


app.include_router(price_reducer.router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "environment": settings.EBAY_ENVIRONMENT}
