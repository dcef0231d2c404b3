from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace import errors
from marketplace.config import settings
from marketplace.logging_config import configure_logging, get_logger
from marketplace.routers import auth, clients, orders, payments, quotes
from marketplace.security.headers import install_security_headers
from marketplace.security.sessions import install_auth_session_middleware

configure_logging(level=settings.log_level, json_output=settings.log_json)
logger = get_logger('api')

ERROR_STATUS_CODES: dict[type[errors.MarketplaceError], int] = {
    errors.QuoteNotFound: 404,
    errors.OrderNotFound: 404,
    errors.ClientNotFound: 404,
    errors.Unauthorized: 403,
    errors.InvalidTransition: 409,
    errors.ConcurrentUpdateFailed: 409,
    errors.DuplicateReference: 409,
    errors.CreditLimitExceeded: 409,
    errors.QuoteNotAcceptable: 409,
    errors.InvalidQuoteAmount: 422,
    errors.EmptyReference: 422,
    errors.EmptyReason: 422,
    errors.ImmutableField: 422,
    errors.InvalidCreditAdjustment: 422,
    errors.AuditLogImmutable: 409,
    errors.OrderCreationFailed: 500,
}


def status_code_for(exc: errors.MarketplaceError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 400


app = FastAPI(title='Procurement Marketplace Order Engine')

install_security_headers(app)
install_auth_session_middleware(app)

app.include_router(auth.router)
app.include_router(quotes.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(clients.router)


@app.exception_handler(errors.MarketplaceError)
async def marketplace_error_handler(request: Request, exc: errors.MarketplaceError) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        'Request failed: %s',
        exc.code,
        extra={'path': request.url.path, 'error_code': exc.code, 'status_code': status_code},
    )
    return JSONResponse(exc.to_dict(), status_code=status_code)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
