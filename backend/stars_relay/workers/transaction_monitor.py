"""
Inbound payment monitor.

Every ``monitor_interval_seconds`` the monitor lists payments the relay
wallet received over the trailing ``monitor_window_hours`` and turns each
new one into a stars purchase for the username in its comment.

Per payment, based on its ledger row:
- processed: skip
- processing, recently touched: skip (another cycle owns it)
- processing, untouched for ``processing_timeout_seconds``: reclaim and retry
- failed with a non-retryable error: skip
- failed otherwise, or no row yet: claim and process

Claims are compare-and-set in the ledger, so overlapping cycles are safe.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from stars_relay.core.clock import Clock, as_utc, system_clock
from stars_relay.core.config import settings
from stars_relay.core.constants import (
    INVALID_RECIPIENT,
    MISSING_USERNAME,
    RETRY_LIMIT_REACHED,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
)
from stars_relay.core.errors import LockNotAcquired, ValidationError
from stars_relay.models.ledger import TransactionStatus
from stars_relay.services.ledger import TransactionLedger, is_retryable_error
from stars_relay.services.pricing import StarsPricing
from stars_relay.services.purchase import StarsPurchaseService
from stars_relay.wallet.base import IncomingFilter, TransactionSource, WalletPayment

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(rf"^[A-Za-z0-9_]{{{USERNAME_MIN_LENGTH},{USERNAME_MAX_LENGTH}}}$")


def extract_username(comment: Optional[str]) -> str:
    """Telegram username from a payment comment, without the leading @."""
    username = (comment or "").strip()
    if username.startswith("@"):
        username = username[1:].strip()
    if not username:
        raise ValidationError(f"{MISSING_USERNAME} in payment comment")
    if not USERNAME_PATTERN.match(username):
        raise ValidationError(f"{INVALID_RECIPIENT}: {username!r} is not a Telegram username")
    return username


@dataclass
class StuckReport:
    count: int
    details: List[Dict[str, Any]] = field(default_factory=list)


class TransactionMonitor:
    def __init__(
        self,
        source: TransactionSource,
        purchaser: StarsPurchaseService,
        ledger: TransactionLedger,
        pricing: StarsPricing,
        clock: Clock = system_clock,
        interval: Optional[float] = None,
    ):
        self._source = source
        self._purchaser = purchaser
        self._ledger = ledger
        self._pricing = pricing
        self._clock = clock
        self._interval = interval if interval is not None else settings.monitor_interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("monitor: already running")
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"monitor: started, checking every {self._interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("monitor: stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"monitor: cycle failed: {e}")
            await self._clock.sleep(self._interval)

    async def run_cycle(self) -> int:
        """Check the wallet once. Returns the number of payments purchased for."""
        since = self._clock.now() - timedelta(hours=settings.monitor_window_hours)
        payments = await self._source.list_incoming(
            IncomingFilter(
                limit=settings.monitor_fetch_limit,
                from_timestamp=int(since.timestamp()),
                archival=settings.monitor_archival,
            )
        )
        logger.info(f"monitor: {len(payments)} incoming payments in window")

        purchased = 0
        for payment in payments:
            try:
                if await self.process_payment(payment):
                    purchased += 1
            except Exception as e:
                # Anything reaching here escaped the purchase flow's own handling
                logger.exception(f"monitor: unexpected error on {payment.reference}")
                await self._record_unexpected(payment.reference, e)
        return purchased

    async def process_payment(self, payment: WalletPayment) -> bool:
        tx = await self._ledger.find_by_hash(payment.reference)
        expected: Optional[TransactionStatus] = None

        if tx is not None:
            if tx.status == TransactionStatus.PROCESSED:
                return False
            if tx.status == TransactionStatus.PROCESSING:
                if not await self._ledger.reset_stuck(payment.reference):
                    return False
                expected = TransactionStatus.FAILED
            elif not is_retryable_error(tx.error_message):
                return False
            else:
                expected = TransactionStatus.FAILED

        if not await self._ledger.lock(payment.reference, expected, payment):
            logger.info(f"monitor: {payment.reference} claimed elsewhere, skipping")
            return False

        attempts = await self._ledger.count_attempts(payment.reference)
        if attempts > settings.monitor_max_attempts:
            await self._ledger.mark_failed(
                payment.reference,
                f"{RETRY_LIMIT_REACHED} after {attempts - 1} attempts",
            )
            return False

        try:
            return await self._purchase(payment)
        except ValidationError as e:
            logger.warning(f"monitor: {payment.reference} rejected: {e}")
            await self._ledger.mark_failed(payment.reference, str(e))
            return False

    async def _purchase(self, payment: WalletPayment) -> bool:
        username = extract_username(payment.comment)
        quote = await self._pricing.quote(payment.amount)
        await self._ledger.save_transaction(
            payment,
            username=username,
            stars_amount=quote.stars_amount,
            gas_fee=quote.gas_fee,
            amount_after_gas=quote.amount_after_gas,
            exchange_rate=quote.exchange_rate,
        )
        self._pricing.validate_bounds(quote)

        logger.info(
            f"monitor: buying {quote.stars_amount} stars for @{username} "
            f"({payment.amount} TON, ref {payment.reference})"
        )
        result = await self._purchaser.purchase_stars(username, quote.stars_amount)

        if result.success:
            await self._ledger.mark_processed(
                payment.reference,
                fragment_ref=result.fragment_ref,
                outgoing_ref=result.outgoing_ref,
                stars_amount=quote.stars_amount,
            )
            logger.info(f"monitor: {payment.reference} processed")
            return True

        await self._ledger.mark_failed(
            payment.reference,
            result.error or "Stars purchase failed",
            fragment_ref=result.fragment_ref,
            outgoing_ref=result.outgoing_ref,
        )
        logger.error(f"monitor: {payment.reference} failed: {result.error}")
        return False

    async def _record_unexpected(self, tx_hash: str, error: Exception) -> None:
        try:
            await self._ledger.mark_failed(tx_hash, f"Unexpected error: {error}")
        except LockNotAcquired:
            logger.info(f"monitor: {tx_hash} not held by this cycle, failure not recorded")
        except Exception as e:
            logger.error(f"monitor: could not record failure for {tx_hash}: {e}")

    async def diagnose_stuck(self) -> StuckReport:
        """Report processing rows past the timeout without touching them."""
        stuck = await self._ledger.find_stuck()
        now = self._clock.now()
        details = [
            {
                "hash": tx.hash,
                "username": tx.username,
                "stars_amount": tx.stars_amount,
                "updated_at": as_utc(tx.updated_at).isoformat(),
                "stuck_seconds": int((now - as_utc(tx.updated_at)).total_seconds()),
            }
            for tx in stuck
        ]
        return StuckReport(count=len(details), details=details)
