import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from donation_service.config import get_settings
from donation_service.database import Base, engine
from donation_service.errors import (
    AuthenticationError,
    DonationNotFound,
    GatewayError,
    OrphanedOrderError,
    PersistenceError,
    ValidationError,
)
from donation_service.routes import router

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Donation Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


def _error(status_code, message, **extra):
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


def jsonable_errors(exc):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Validation error", errors=jsonable_errors(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    response = _error(exc.status_code, exc.detail)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return _error(400, str(exc))


@app.exception_handler(DonationNotFound)
async def not_found_handler(request: Request, exc: DonationNotFound):
    return _error(404, "Donation not found")


@app.exception_handler(AuthenticationError)
async def authentication_handler(request: Request, exc: AuthenticationError):
    return _error(401, str(exc))


@app.exception_handler(GatewayError)
async def gateway_handler(request: Request, exc: GatewayError):
    logger.error("Gateway error on %s %s: %s", request.method, request.url.path, exc)
    return _error(500, "Payment gateway error")


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    if isinstance(exc, OrphanedOrderError):
        return _error(500, str(exc), orderId=exc.order_id)
    logger.error("Persistence error on %s %s: %s", request.method, request.url.path, exc)
    return _error(500, "Failed to record donation")


@app.get("/health")
def health():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("Health check could not reach the database: %s", exc)
        database = "unavailable"
    return {"status": "ok", "database": database}
