import logging

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from limits.storage import Storage

from config import (
    FRONTEND_URL, LOG_LEVEL,
    RATE_LIMIT_WINDOW_SECONDS, RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_ANON_MAX_REQUESTS,
)
from database import engine, Base
from routes.auth import router as auth_router, enforce_rate_limit
from routes.invoice import router as invoice_router
from routes.orders import router as orders_router
from routes.portfolio import router as portfolio_router
from routes.insurance import router as insurance_router
from routes.activity import router as activity_router
from services.errors import FactorlyError
from services.rate_limit import RateLimiter, build_storage

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("factorly")

# Create tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Factorly API",
    description="Tokenized invoice financing: Dutch auctions, funding ledger and secondary market",
    version="1.0.0",
)

# CORS: localhost plus Vercel preview/production URLs
_allowed_origins = [
    "http://localhost:3000",
    FRONTEND_URL,
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _allowed_origins if o],
    allow_origin_regex=r"https://.*\.vercel\.app",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def install_rate_limiters(application: FastAPI, storage: Storage = None) -> None:
    if storage is None:
        storage = build_storage()
    application.state.user_rate_limiter = RateLimiter(storage, RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)
    application.state.anon_rate_limiter = RateLimiter(storage, RATE_LIMIT_ANON_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)


install_rate_limiters(app)


@app.exception_handler(FactorlyError)
def factorly_error_handler(request: Request, exc: FactorlyError):
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message} {exc.context}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


_guarded = [Depends(enforce_rate_limit)]
app.include_router(auth_router, dependencies=_guarded)
app.include_router(invoice_router, dependencies=_guarded)
app.include_router(orders_router, dependencies=_guarded)
app.include_router(portfolio_router, dependencies=_guarded)
app.include_router(insurance_router, dependencies=_guarded)
app.include_router(activity_router, dependencies=_guarded)


@app.get("/")
def root():
    return {"message": "Factorly API is running", "version": "1.0.0"}


@app.get("/health")
def health():
    return {"status": "healthy"}
