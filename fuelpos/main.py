import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from fuelpos.config import settings
from fuelpos.errors import CollaboratorError, DomainError
from fuelpos.routers import reports, shift_readings

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Fuel Station Back Office')

app.include_router(shift_readings.router)
app.include_router(reports.router)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = shift_readings.STATUS_BY_KIND.get(exc.kind, 400)
    return JSONResponse(status_code=status_code, content={'detail': exc.to_dict()})


@app.exception_handler(SQLAlchemyError)
def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error('Storage failure on %s %s', request.method, request.url.path, exc_info=exc)
    error = CollaboratorError('Storage is unavailable, please try again')
    return JSONResponse(status_code=503, content={'detail': error.to_dict()})


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
