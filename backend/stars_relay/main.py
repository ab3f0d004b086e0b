import importlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from tortoise.contrib.fastapi import RegisterTortoise

from stars_relay import __version__
from stars_relay.api import health
from stars_relay.core.config import settings
from stars_relay.services.fragment import FragmentClient
from stars_relay.services.ledger import TransactionLedger
from stars_relay.services.pricing import StarsPricing
from stars_relay.services.purchase import StarsPurchaseService
from stars_relay.wallet import TonWalletService, WalletAccount, WalletSigner
from stars_relay.workers.transaction_monitor import TransactionMonitor

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def load_signer(path: str) -> Optional[WalletSigner]:
    """Instantiate the WalletSigner named by a "package.module:ClassName" path."""
    if not path:
        return None
    module_name, _, class_name = path.partition(":")
    signer_cls = getattr(importlib.import_module(module_name), class_name)
    return signer_cls()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    async with RegisterTortoise(
        app,
        config=settings.tortoise_config,
        generate_schemas=settings.generate_schemas,
        add_exception_handlers=True,
    ):
        signer = load_signer(settings.wallet_signer)
        if signer is not None:
            account = signer.account
        else:
            account = WalletAccount(
                address=settings.wallet_address,
                chain=settings.ton_chain_id,
                public_key=settings.wallet_public_key,
                wallet_state_init=settings.wallet_state_init,
            )
            logger.warning("No wallet signer configured, purchases will be simulated")

        wallet = TonWalletService(account, signer=signer)
        fragment = FragmentClient()
        ledger = TransactionLedger()
        purchaser = StarsPurchaseService(
            fragment, account, sender=wallet if signer is not None else None
        )
        monitor = TransactionMonitor(
            source=wallet,
            purchaser=purchaser,
            ledger=ledger,
            pricing=StarsPricing(client=fragment),
        )

        app.state.wallet = wallet
        app.state.ledger = ledger
        app.state.purchaser = purchaser
        app.state.monitor = monitor

        if settings.monitor_auto_start:
            monitor.start()
        yield
        await monitor.stop()


app = FastAPI(
    title=settings.app_name,
    description="""
    TON to Telegram Stars relay

    Watches the relay wallet for incoming TON payments and buys Telegram
    stars on Fragment for the username given in each payment comment.
    """,
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(health.router)


@app.get("/", tags=["root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
