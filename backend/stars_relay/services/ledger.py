"""
Payment ledger backed by Tortoise ORM.

Every status write goes through a compare-and-set on the status the caller
last saw, together with a TransactionHistory row in the same database
transaction. That compare-and-set is the only thing standing between two
monitor cycles and a double purchase.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from stars_relay.core.clock import Clock, system_clock
from stars_relay.core.config import settings
from stars_relay.core.constants import NON_RETRYABLE_MARKERS
from stars_relay.core.errors import LedgerIntegrityError, LockNotAcquired, ValidationError
from stars_relay.models.ledger import HistoryAction, Transaction, TransactionHistory, TransactionStatus
from stars_relay.wallet.base import WalletPayment

logger = logging.getLogger(__name__)


def is_retryable_error(error_message: Optional[str]) -> bool:
    if not error_message:
        return True
    lowered = error_message.lower()
    return not any(marker.lower() in lowered for marker in NON_RETRYABLE_MARKERS)


class TransactionLedger:
    def __init__(self, clock: Clock = system_clock):
        self._clock = clock

    # --- Reads ---

    async def exists(self, tx_hash: str) -> bool:
        return await Transaction.filter(hash=tx_hash).exists()

    async def find_by_hash(self, tx_hash: str) -> Optional[Transaction]:
        return await Transaction.get_or_none(hash=tx_hash)

    async def find_stuck(self, timeout_seconds: Optional[int] = None) -> List[Transaction]:
        """Rows held in processing for longer than the timeout."""
        return await Transaction.filter(
            status=TransactionStatus.PROCESSING, updated_at__lt=self._cutoff(timeout_seconds)
        ).order_by("updated_at")

    async def get_retryable_failures(self, limit: Optional[int] = None) -> List[Transaction]:
        """Failed rows whose error carries none of the non-retryable markers."""
        query = Transaction.filter(status=TransactionStatus.FAILED)
        for marker in NON_RETRYABLE_MARKERS:
            query = query.filter(
                Q(error_message__isnull=True) | ~Q(error_message__icontains=marker)
            )
        query = query.order_by("updated_at")
        if limit:
            query = query.limit(limit)
        return await query

    def is_retryable(self, tx: Transaction) -> bool:
        return tx.status == TransactionStatus.FAILED and is_retryable_error(tx.error_message)

    async def count_attempts(self, tx_hash: str) -> int:
        """How many times the payment has been claimed for processing."""
        return await TransactionHistory.filter(
            transaction_id=tx_hash,
            new_status=TransactionStatus.PROCESSING,
            action__in=[HistoryAction.CREATED, HistoryAction.LOCKED],
        ).count()

    async def get_recent_transactions(
        self, page: int = 1, limit: int = 20
    ) -> Tuple[List[Transaction], int]:
        query = Transaction.all()
        total = await query.count()
        rows = await query.order_by("-created_at").offset((page - 1) * limit).limit(limit)
        return rows, total

    async def get_transactions_by_status(
        self, status: TransactionStatus, page: int = 1, limit: int = 20
    ) -> Tuple[List[Transaction], int]:
        query = Transaction.filter(status=status)
        total = await query.count()
        rows = await query.order_by("-created_at").offset((page - 1) * limit).limit(limit)
        return rows, total

    async def get_all_processed_hashes(self) -> List[str]:
        return await Transaction.filter(status=TransactionStatus.PROCESSED).values_list(
            "hash", flat=True
        )

    async def get_stats(self) -> Dict[str, Any]:
        processed = await Transaction.filter(status=TransactionStatus.PROCESSED).values_list(
            "stars_amount", "amount"
        )
        total_stars = sum(stars or 0 for stars, _ in processed)
        total_ton = sum((Decimal(amount or 0) for _, amount in processed), Decimal("0"))
        return {
            "total_count": await Transaction.all().count(),
            "processed_count": len(processed),
            "processing_count": await Transaction.filter(
                status=TransactionStatus.PROCESSING
            ).count(),
            "failed_count": await Transaction.filter(status=TransactionStatus.FAILED).count(),
            "total_stars": total_stars,
            "total_ton": f"{total_ton:.9f}",
        }

    # --- History ---

    async def add_history(
        self,
        tx_hash: str,
        action: HistoryAction,
        new_status: TransactionStatus,
        previous_status: Optional[TransactionStatus] = None,
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        using_db=None,
    ) -> TransactionHistory:
        return await TransactionHistory.create(
            transaction_id=tx_hash,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            message=message,
            data=data,
            using_db=using_db,
        )

    async def get_history(self, tx_hash: str) -> List[TransactionHistory]:
        return await TransactionHistory.filter(transaction_id=tx_hash).order_by("created_at")

    async def get_formatted_history(self, tx_hash: str) -> List[Dict[str, Any]]:
        formatted = []
        for record in await self.get_history(tx_hash):
            status_change = record.new_status.value
            if record.previous_status:
                status_change = f"{record.previous_status.value} → {record.new_status.value}"
            formatted.append(
                {
                    "timestamp": record.created_at.isoformat(),
                    "action": record.action.value,
                    "status_change": status_change,
                    "message": record.message,
                    "data": record.data,
                }
            )
        return formatted

    # --- Writes ---

    async def save_transaction(
        self,
        payment: WalletPayment,
        username: Optional[str] = None,
        stars_amount: Optional[int] = None,
        status: Optional[TransactionStatus] = None,
        gas_fee: Optional[Decimal] = None,
        amount_after_gas: Optional[Decimal] = None,
        exchange_rate: Optional[Decimal] = None,
        error_message: Optional[str] = None,
    ) -> Transaction:
        """Insert or update the row for ``payment.reference``."""
        details: Dict[str, Any] = {
            "amount": payment.amount,
            "sender_address": payment.from_address or None,
            "comment": payment.comment or None,
        }
        optional = {
            "username": username,
            "stars_amount": stars_amount,
            "gas_fee": gas_fee,
            "amount_after_gas": amount_after_gas,
            "exchange_rate": exchange_rate,
            "error_message": error_message,
        }
        details.update({key: value for key, value in optional.items() if value is not None})

        async with in_transaction() as conn:
            tx = await Transaction.get_or_none(hash=payment.reference, using_db=conn)
            if tx is None:
                tx = await Transaction.create(
                    hash=payment.reference,
                    status=status or TransactionStatus.PROCESSED,
                    using_db=conn,
                    **details,
                )
                await self.add_history(
                    tx.hash, HistoryAction.CREATED, tx.status, using_db=conn
                )
                return tx

            previous = tx.status
            tx.update_from_dict(details)
            if status is not None and status != previous:
                if previous == TransactionStatus.PROCESSED:
                    raise ValidationError(f"Transaction {tx.hash} is already processed")
                tx.status = status
            await tx.save(using_db=conn)
            if tx.status != previous:
                await self.add_history(
                    tx.hash,
                    HistoryAction.STATUS_CHANGED,
                    tx.status,
                    previous_status=previous,
                    using_db=conn,
                )
            return tx

    async def lock(
        self,
        tx_hash: str,
        expected_status: Optional[TransactionStatus],
        payment: Optional[WalletPayment] = None,
    ) -> bool:
        """
        Claim a payment for processing.

        ``expected_status`` is the status the caller read; None means the
        row did not exist. Returns False when another owner got there first.
        """
        if expected_status == TransactionStatus.PROCESSED:
            return False

        try:
            async with in_transaction() as conn:
                if expected_status is None:
                    details: Dict[str, Any] = {}
                    if payment is not None:
                        details = {
                            "amount": payment.amount,
                            "sender_address": payment.from_address or None,
                            "comment": payment.comment or None,
                        }
                    await Transaction.create(
                        hash=tx_hash,
                        status=TransactionStatus.PROCESSING,
                        using_db=conn,
                        **details,
                    )
                    await self.add_history(
                        tx_hash,
                        HistoryAction.CREATED,
                        TransactionStatus.PROCESSING,
                        message="Claimed for processing",
                        using_db=conn,
                    )
                    return True

                updated = (
                    await Transaction.filter(hash=tx_hash, status=expected_status)
                    .using_db(conn)
                    .update(status=TransactionStatus.PROCESSING, updated_at=self._clock.now())
                )
                if not updated:
                    return False
                await self.add_history(
                    tx_hash,
                    HistoryAction.LOCKED,
                    TransactionStatus.PROCESSING,
                    previous_status=expected_status,
                    message="Claimed for processing",
                    using_db=conn,
                )
                return True
        except IntegrityError:
            logger.info(f"ledger: {tx_hash} was inserted by another owner")
            return False

    async def mark_processed(
        self,
        tx_hash: str,
        fragment_ref: Optional[str],
        outgoing_ref: Optional[str],
        stars_amount: Optional[int] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "fragment_transaction_hash": fragment_ref,
            "outgoing_transaction_hash": outgoing_ref,
            "error_message": None,
        }
        if stars_amount is not None:
            values["stars_amount"] = stars_amount
        await self._finish(
            tx_hash,
            TransactionStatus.PROCESSED,
            HistoryAction.STARS_SENT,
            values,
            message="Stars purchased",
            data={
                "fragmentTransactionHash": fragment_ref,
                "outgoingTransactionHash": outgoing_ref,
                "starsAmount": stars_amount,
            },
        )

    async def mark_failed(
        self,
        tx_hash: str,
        error_message: str,
        fragment_ref: Optional[str] = None,
        outgoing_ref: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {"error_message": error_message}
        if fragment_ref:
            values["fragment_transaction_hash"] = fragment_ref
        if outgoing_ref:
            values["outgoing_transaction_hash"] = outgoing_ref
        await self._finish(
            tx_hash,
            TransactionStatus.FAILED,
            HistoryAction.ERROR_OCCURRED,
            values,
            message=error_message,
        )

    async def reset_stuck(self, tx_hash: str, timeout_seconds: Optional[int] = None) -> bool:
        """Move an abandoned processing row to failed so it can be claimed again."""
        cutoff = self._cutoff(timeout_seconds)
        message = f"Stuck in processing since before {cutoff.isoformat()}, reclaimed"
        async with in_transaction() as conn:
            updated = (
                await Transaction.filter(
                    hash=tx_hash, status=TransactionStatus.PROCESSING, updated_at__lt=cutoff
                )
                .using_db(conn)
                .update(
                    status=TransactionStatus.FAILED,
                    error_message=message,
                    updated_at=self._clock.now(),
                )
            )
            if not updated:
                return False
            await self.add_history(
                tx_hash,
                HistoryAction.UNLOCKED,
                TransactionStatus.FAILED,
                previous_status=TransactionStatus.PROCESSING,
                message=message,
                using_db=conn,
            )
        logger.warning(f"ledger: reclaimed stuck transaction {tx_hash}")
        return True

    async def update_status_manually(
        self, tx_hash: str, new_status: TransactionStatus, message: Optional[str] = None
    ) -> Transaction:
        async with in_transaction() as conn:
            tx = await Transaction.get_or_none(hash=tx_hash, using_db=conn)
            if tx is None:
                raise LedgerIntegrityError(f"Transaction {tx_hash} not found")
            previous = tx.status
            if previous == TransactionStatus.PROCESSED and new_status != previous:
                raise ValidationError(f"Transaction {tx_hash} is already processed")
            tx.status = new_status
            await tx.save(using_db=conn)
            await self.add_history(
                tx_hash,
                HistoryAction.MANUAL_UPDATE,
                new_status,
                previous_status=previous,
                message=message,
                using_db=conn,
            )
        logger.info(f"ledger: {tx_hash} manually moved {previous.value} -> {new_status.value}")
        return tx

    async def _finish(
        self,
        tx_hash: str,
        new_status: TransactionStatus,
        action: HistoryAction,
        values: Dict[str, Any],
        message: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with in_transaction() as conn:
            updated = (
                await Transaction.filter(hash=tx_hash, status=TransactionStatus.PROCESSING)
                .using_db(conn)
                .update(status=new_status, updated_at=self._clock.now(), **values)
            )
            if not updated:
                if not await Transaction.filter(hash=tx_hash).using_db(conn).exists():
                    raise LedgerIntegrityError(f"Transaction {tx_hash} not found")
                raise LockNotAcquired(tx_hash)
            await self.add_history(
                tx_hash,
                action,
                new_status,
                previous_status=TransactionStatus.PROCESSING,
                message=message,
                data=data,
                using_db=conn,
            )

    def _cutoff(self, timeout_seconds: Optional[int]) -> datetime:
        if timeout_seconds is None:
            timeout_seconds = settings.processing_timeout_seconds
        return self._clock.now() - timedelta(seconds=timeout_seconds)
