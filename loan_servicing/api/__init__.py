"""
Loan Servicing API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..engine import LoanServicingEngine
from ..exceptions import ServicingError, http_status_for
from ..logging_config import get_logger, log_action
from ..tenancy import extract_tenant_from_header
from .admin import router as admin_router
from .customers import router as customers_router
from .loans import router as loans_router
from .portfolio import router as portfolio_router


logger = get_logger("loan_servicing.api")


def create_app(engine: Optional[LoanServicingEngine] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Loan Servicing Engine API",
        description="Multi-tenant loan servicing: schedules, payments, overdue tracking and risk metrics",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.engine = engine or LoanServicingEngine()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServicingError)
    async def servicing_error_handler(request: Request, exc: ServicingError):
        status_code = http_status_for(exc)
        if status_code >= 500:
            log_action(
                logger, "error", f"{request.method} {request.url.path} failed: {exc.message}",
                tenant_id=extract_tenant_from_header(request.headers),
                action="http_request",
                resource=request.url.path,
                extra={"code": exc.code}
            )
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(portfolio_router, prefix="/portfolio", tags=["Portfolio"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_servicing_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Loan Servicing Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "customers": "/customers",
                "portfolio": "/portfolio",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False, workers: int = 1):
    """Run the FastAPI server"""
    uvicorn.run(
        "loan_servicing.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        workers=workers,
        log_level="info"
    )
