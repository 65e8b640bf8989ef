import os
import time
import asyncio

import asyncpg
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError

from . import __version__
from .core import db_startup, init_metrics, setup_logging, shutdown_connections
from .errors import AppError, InternalError, ServiceUnavailableError
from .routes import router

logger = setup_logging()

TRANSIENT_DB_ERRORS = (
    asyncio.TimeoutError,
    OSError,
    asyncpg.exceptions.QueryCanceledError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.TooManyConnectionsError,
)

app = FastAPI(title="Messego API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(router, prefix="/api")

if os.getenv('MEDIA_BACKEND', 's3').lower() == 'local':
    media_root = os.getenv('MEDIA_ROOT', 'media')
    os.makedirs(media_root, exist_ok=True)
    app.mount('/media', StaticFiles(directory=media_root), name='media')


def envelope_response(status_code: int, message: str, errors=None, headers=None) -> JSONResponse:
    body = {'success': False, 'message': message}
    if errors:
        body['errors'] = errors
    return JSONResponse(body, status_code=status_code, headers=headers)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error({'msg': 'request_failed', 'path': request.url.path, 'error': type(exc).__name__, 'detail': exc.message})
    headers = {'Retry-After': '5'} if isinstance(exc, ServiceUnavailableError) else None
    return envelope_response(exc.status_code, exc.message, exc.errors, headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for err in exc.errors():
        field = '.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'
        errors.setdefault(field, err.get('msg', 'Invalid value'))
    return envelope_response(400, 'Validation failed', errors)


def unavailable_response(request: Request, exc: Exception) -> JSONResponse:
    logger.warning({'msg': 'request_timeout', 'path': request.url.path, 'error': str(exc)})
    return envelope_response(503, ServiceUnavailableError.default_message, headers={'Retry-After': '5'})


@app.exception_handler(PoolTimeoutError)
@app.exception_handler(asyncio.TimeoutError)
async def timeout_handler(request: Request, exc: Exception):
    return unavailable_response(request, exc)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    # only dropped connections and timeouts are worth retrying;
    # the asyncpg adapter keeps the driver error as __cause__
    orig = exc.orig
    if isinstance(orig, TRANSIENT_DB_ERRORS) or isinstance(getattr(orig, '__cause__', None), TRANSIENT_DB_ERRORS):
        return unavailable_response(request, exc)
    logger.error({'msg': 'database_error', 'path': request.url.path, 'error': str(exc)})
    return envelope_response(InternalError.status_code, InternalError.default_message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception({'msg': 'unhandled_exception', 'path': request.url.path})
    return envelope_response(InternalError.status_code, InternalError.default_message)


@app.get('/healthz')
async def healthz():
    return {'status': 'ok'}


@app.middleware('http')
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    logger.info({'msg': 'request_start', 'method': request.method, 'path': request.url.path})
    response = await call_next(request)
    logger.info({
        'msg': 'request_end',
        'method': request.method,
        'path': request.url.path,
        'status': response.status_code,
        'duration_ms': round((time.perf_counter() - started) * 1000, 2),
    })
    return response


@app.on_event("startup")
async def startup():
    # Best-effort init, don't block app from starting if a dependency fails
    await db_startup()
    init_metrics()


@app.on_event("shutdown")
async def shutdown():
    await shutdown_connections()
