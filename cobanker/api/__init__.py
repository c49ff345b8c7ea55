"""
CoBanker Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..config import CobankerConfig, get_config
from ..logging_config import log_action, setup_logging
from .accounts import router as accounts_router
from .auth import BankingSystem
from .customers import router as customers_router
from .errors import register_exception_handlers
from .transactions import router as transactions_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the ledger service at startup unless one was injected"""
    owned = app.state.system is None
    if owned:
        app.state.system = BankingSystem(app.state.config)
    log_action(app.state.logger, "info", "CoBanker API started", action="startup",
               extra={"database_url_scheme": app.state.config.database_url.split(":", 1)[0]})
    try:
        yield
    finally:
        if owned:
            app.state.system.close()
            app.state.system = None
        log_action(app.state.logger, "info", "CoBanker API stopped", action="shutdown")


def create_app(config: Optional[CobankerConfig] = None,
               system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if config is None:
        config = system.config if system is not None else get_config()

    app = FastAPI(
        title="CoBanker Ledger API",
        description="Banking back-office accounts and transactions with balance-integrity guarantees",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.system = system
    app.state.logger = setup_logging(config.log_level, config.log_format)

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(customers_router, tags=["Directory"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "cobanker",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "CoBanker Ledger API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "accounts": "/accounts",
                "transactions": "/transactions",
                "banks": "/banks",
                "branches": "/branches",
                "customers": "/customers",
            }
        }

    return app


# No datastore client is built until the lifespan starts
app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "cobanker.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
