import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from database import AsyncSessionLocal, init_db
from logging_config import configure_logging
from api.errors import register_error_handlers
from api.projects import router as projects_router
from api.settlement import router as settlement_router
from services.custody import KeyCustody
from services.ledger import GatewayLedgerClient
from services.poller import RepaymentPoller
from services.reconciler import SettlementReconciler

logger = logging.getLogger("bochica.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    await init_db()

    custody = KeyCustody(settings.custody_config())
    if not custody.configured:
        logger.warning("Custody master secret is not configured; escrow operations will fail")
    ledger = GatewayLedgerClient(
        settings.ledger_gateway_url,
        request_timeout=settings.ledger_request_timeout_seconds,
        poll_interval=settings.finality_poll_interval_seconds,
    )
    reconciler = SettlementReconciler(AsyncSessionLocal, custody, ledger, settings.reconciler_config())
    app.state.custody = custody
    app.state.ledger = ledger
    app.state.reconciler = reconciler

    poller = None
    if settings.repayment_poll_interval_seconds > 0:
        poller = RepaymentPoller(reconciler, settings.repayment_poll_interval_seconds)
        poller.start()
    try:
        yield
    finally:
        if poller is not None:
            await poller.stop()
        await ledger.close()


app = FastAPI(
    title=settings.app_name,
    description="Escrow settlement API: custodial wallets, withdrawals and repayment reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)
app.include_router(projects_router)
app.include_router(settlement_router)


@app.get("/health")
async def health():
    return {"status": "ok", "lendingModel": settings.lending_model}
