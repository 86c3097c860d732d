"""
FastAPI REST API Module

HTTP boundary for the atomic ledger: transfers, the chaos (node stop) hook,
and thin account/ledger reads. Runs on port 8081.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .chaos import FaultInjector
from .config import LedgerConfig, get_config
from .errors import LedgerError, PersistenceFailure, StoreError
from .logging_config import get_logger, setup_logging
from .models import parse_balance
from .store import LedgerStore, create_store
from .transfers import TransferCoordinator


logger = get_logger("atomic_ledger.api")


# Pydantic models for API requests/responses
class TransferRequest(BaseModel):
    from_id: int
    to_id: int
    amount: Decimal = Field(..., description="Amount to move, at most two decimal places")


class ChaosRequest(BaseModel):
    node_id: Optional[str] = Field(None, description="Node to stop; defaults to the configured node")


class CreateAccountRequest(BaseModel):
    balance: Optional[Decimal] = Field(None, description="Opening balance")


class AccountModel(BaseModel):
    id: int
    balance: str


class LedgerEntryModel(BaseModel):
    id: int
    from_id: int
    to_id: int
    amount: str
    created_at: str


class LedgerSystem:
    """Store, coordinator and fault injector shared by all requests"""

    def __init__(self, store: LedgerStore, coordinator: TransferCoordinator,
                 injector: FaultInjector, config: Optional[LedgerConfig] = None):
        self.store = store
        self.coordinator = coordinator
        self.injector = injector
        self.config = config or get_config()

    @classmethod
    def from_config(cls, config: LedgerConfig) -> 'LedgerSystem':
        store = create_store(config.database_url, config)
        store.create_schema()
        return cls(
            store=store,
            coordinator=TransferCoordinator.from_config(store, config),
            injector=FaultInjector.from_config(config),
            config=config,
        )

    def close(self) -> None:
        self.injector.close()
        self.store.close()


def get_system(request: Request) -> LedgerSystem:
    """Dependency returning the app's LedgerSystem"""
    return request.app.state.system


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = system.config if system else get_config()
    if system is None:
        setup_logging(config.log_level, fmt=config.log_format)
        system = LedgerSystem.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Atomic ledger API starting")
        yield
        system.close()
        logger.info("Atomic ledger API stopped")

    app = FastAPI(
        title="Atomic Ledger API",
        description="Atomic fund transfers over a replicated SQL store, with node fault injection",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Store error on {request.url.path}: {exc}")
        error = PersistenceFailure(str(exc))
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy"}

    # Blocking store and subprocess calls: plain def handlers run in the threadpool

    @app.post("/api/transfers")
    def transfer(request: TransferRequest, system: LedgerSystem = Depends(get_system)):
        """Move funds between two accounts atomically"""
        result = system.coordinator.transfer(request.from_id, request.to_id, request.amount)
        return {"message": "Transfer successful!", **result.to_dict()}

    @app.post("/api/chaos")
    def chaos(request: Optional[ChaosRequest] = None,
              system: LedgerSystem = Depends(get_system)):
        """Stop one replica node of the store cluster"""
        result = system.injector.stop_node(request.node_id if request else None)
        return result.to_dict()

    @app.get("/api/accounts", response_model=List[AccountModel])
    def list_accounts(system: LedgerSystem = Depends(get_system)):
        """List all accounts"""
        return [a.to_dict() for a in system.store.list_accounts()]

    @app.post("/api/accounts", response_model=AccountModel, status_code=status.HTTP_201_CREATED)
    def create_account(request: Optional[CreateAccountRequest] = None,
                       system: LedgerSystem = Depends(get_system)):
        """Open an account with the given or default opening balance"""
        if request and request.balance is not None:
            balance = parse_balance(request.balance)
        else:
            balance = parse_balance(system.config.default_opening_balance)
        return system.store.create_account(balance).to_dict()

    @app.get("/api/transactions", response_model=List[LedgerEntryModel])
    def list_transactions(limit: int = Query(20, ge=1, le=500),
                          system: LedgerSystem = Depends(get_system)):
        """Most recent ledger entries, newest first"""
        return [e.to_dict() for e in system.store.recent_entries(limit)]

    return app


def run_server(host: str = "0.0.0.0", port: int = 8081, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "atomic_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
