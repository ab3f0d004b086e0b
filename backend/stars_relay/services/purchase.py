"""
Stars purchase orchestration.

One call to purchase_stars walks a fresh Fragment session from recipient
search to completion, paying for it on-chain from the relay wallet in the
middle. Every stage failure ends the call with success=False; retrying
is the monitor's job.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from stars_relay.core.clock import Clock, system_clock
from stars_relay.core.config import settings
from stars_relay.core.errors import StarsRelayError
from stars_relay.services.completion import PurchaseStatusPoller
from stars_relay.services.fragment import FragmentClient, PurchaseSession
from stars_relay.services.payload import decode_payload_comment, is_decode_error
from stars_relay.wallet.base import TransactionSender, TransferStatus, WalletAccount

logger = logging.getLogger(__name__)


@dataclass
class PurchaseResult:
    success: bool
    outgoing_ref: Optional[str] = None
    fragment_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    stars_amount: Optional[int] = None
    recipient_id: Optional[str] = None
    status: Optional[str] = None
    forced: bool = False
    error: Optional[str] = None


class StarsPurchaseService:
    def __init__(
        self,
        client: FragmentClient,
        account: WalletAccount,
        sender: Optional[TransactionSender] = None,
        clock: Clock = system_clock,
        poller: Optional[PurchaseStatusPoller] = None,
    ):
        self._client = client
        self._account = account
        self._sender = sender
        self._clock = clock
        self._poller = poller or PurchaseStatusPoller(client, clock=clock)
        # One purchase at a time per instance
        self._lock = asyncio.Lock()

    @property
    def simulated(self) -> bool:
        return self._sender is None

    async def purchase_stars(self, username: str, quantity: int) -> PurchaseResult:
        async with self._lock:
            try:
                return await self._purchase(username, quantity)
            except StarsRelayError as e:
                logger.error(f"purchase: {quantity} stars for {username} failed: {e}")
                return PurchaseResult(success=False, stars_amount=quantity, error=str(e))
            except Exception as e:
                logger.exception(f"purchase: unexpected error buying stars for {username}")
                return PurchaseResult(
                    success=False, stars_amount=quantity, error=f"Unexpected error: {e}"
                )

    async def _purchase(self, username: str, quantity: int) -> PurchaseResult:
        session = PurchaseSession()
        logger.info(f"purchase: buying {quantity} stars for {username}")

        # Opens the server-side session and gets the first dh
        await self._client.poll_status(session, session.req_id, mode="new")

        recipient_id = await self._client.search_recipient(session, username, quantity)
        init = await self._client.init_purchase(session, recipient_id, quantity)
        await self._client.poll_status(session, init.req_id)

        instructions = await self._client.fetch_payment_instructions(
            session, init.req_id, self._account
        )
        message = instructions[0]
        comment = decode_payload_comment(message.payload)
        if is_decode_error(comment):
            return PurchaseResult(
                success=False,
                fragment_ref=init.req_id,
                amount=init.amount,
                stars_amount=quantity,
                recipient_id=recipient_id,
                status="decode_failed",
                error=f"Unreadable payment payload: {comment}",
            )
        logger.info(
            f"purchase: req_id={init.req_id} pay {message.amount} nanoton "
            f"to {message.address}, comment={comment!r}"
        )

        boc = message.payload
        if self._sender is None:
            outgoing_ref = f"SIM{int(self._clock.timestamp() * 1000):X}"
            logger.warning(f"purchase: no wallet sender, simulating transfer {outgoing_ref}")
        else:
            sent = await self._sender.send(
                message.address,
                message.amount,
                comment,
                timeout=settings.wallet_send_timeout_seconds,
            )
            if not sent.success or not sent.reference:
                return PurchaseResult(
                    success=False,
                    fragment_ref=init.req_id,
                    amount=init.amount,
                    stars_amount=quantity,
                    recipient_id=recipient_id,
                    status="send_failed",
                    error=f"TON transfer failed: {sent.error or 'no reference returned'}",
                )
            outgoing_ref = sent.reference
            boc = sent.boc or boc

            status = await self._sender.wait_for_completion(
                outgoing_ref, timeout=settings.wallet_confirm_timeout_seconds
            )
            if status != TransferStatus.COMPLETED:
                logger.warning(
                    f"purchase: transfer {outgoing_ref} not confirmed ({status.value}), continuing"
                )

        if not await self._client.confirm_payment(session, init.req_id, boc, self._account):
            logger.warning(f"purchase: Fragment did not confirm {init.req_id}, polling anyway")

        outcome = await self._poller.wait(session, init.req_id)
        return PurchaseResult(
            success=outcome.completed,
            outgoing_ref=outgoing_ref,
            fragment_ref=init.req_id,
            amount=init.amount,
            stars_amount=quantity,
            recipient_id=recipient_id,
            status="completed" if outcome.completed else "timeout",
            forced=outcome.forced,
            error=outcome.error,
        )
