from fastapi import FastAPI, HTTPException, Query, Security, Depends, Request
from fastapi.security import APIKeyHeader
from starlette.middleware.cors import CORSMiddleware
from typing import Optional
import os
import sys

# Rate Limiting
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

# Add current directory to path
sys.path.insert(0, os.getcwd())

from main import lookup_service, configure_logging
from srv_module.errors import BAD_PARAM
from srv_module.logger import get_child_logger
from srv_module.query_service import DNSQueryService
from srv_module.srv_resolver import DEFAULT_TIMEOUT

MAX_TIMEOUT = float(os.getenv("SRV_MAX_TIMEOUT", "30.0"))
# Resolver answers meaning "this service is not published"
NOT_FOUND_CODES = {"NXDOMAIN", "NODATA"}

# Setup Limiter (using X-Forwarded-For if available via ProxyHeaders)
limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="SRV Resolver")

# Add Rate Limit Exception Handler
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS (Allow browser access if needed)
origins = os.getenv("CORS_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

log = get_child_logger("api")

# Swapped out by tests; None means the dnspython-backed default
query_service: Optional[DNSQueryService] = None

# Security Scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def check_api_key(api_key: str = Security(api_key_header)):
    """
    Validates API Key if 'API_KEY' env var is set.
    If 'API_KEY' is NOT set, allows open access (with warning logs).
    """
    expected_key = os.getenv("API_KEY")
    if expected_key:
        if api_key != expected_key:
            raise HTTPException(status_code=403, detail="Invalid API Key")
    return api_key


@app.on_event("startup")
async def startup_event():
    configure_logging()
    log.info("Starting up API...")

    if not os.getenv("API_KEY"):
        log.warning("No API_KEY configured! API is accessible without authentication (Rate Limits apply).")


@app.get("/health")
@limiter.exempt
def health_check():
    return {"status": "ok"}


@app.get("/srv", dependencies=[Depends(check_api_key)])
@limiter.limit(lambda: os.getenv("RATE_LIMIT", "60/minute"))
async def lookup_srv(
    request: Request,
    name: str = Query(..., min_length=1),
    timeout: float = Query(DEFAULT_TIMEOUT, gt=0),
):
    if timeout > MAX_TIMEOUT:
        raise HTTPException(status_code=400, detail=f"timeout must be <= {MAX_TIMEOUT}")

    result = await lookup_service(name, timeout=timeout, query_service=query_service)

    error = result.get("error")
    if error is None:
        return result
    if error["code"] == BAD_PARAM:
        raise HTTPException(status_code=400, detail=error)
    if error["code"] == "TIMEOUT" and error["domain"] == "srv_resolver":
        raise HTTPException(status_code=504, detail=error)
    if error["domain"] == "dns" and error["code"] in NOT_FOUND_CODES:
        raise HTTPException(status_code=404, detail=error)
    raise HTTPException(status_code=502, detail=error)
