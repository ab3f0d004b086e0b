"""
TON wallet service backed by the toncenter v2 HTTP API.

Signs transfers through a WalletSigner, broadcasts them, infers their
on-chain status from the wallet's account state, and lists payments the
wallet received.
API docs: https://toncenter.com/api/v2/
"""

import base64
import binascii
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from stars_relay.core.clock import Clock, system_clock
from stars_relay.core.config import settings
from stars_relay.core.constants import NANOTON_DECIMAL
from stars_relay.core.errors import NetworkError, ProtocolError
from stars_relay.wallet.base import (
    Direction,
    IncomingFilter,
    SendResult,
    TransactionSender,
    TransactionSource,
    TransferStatus,
    WalletAccount,
    WalletPayment,
    WalletSigner,
)

logger = logging.getLogger(__name__)

SEND_BACKOFF_BASE_SECONDS = 1.0
SEND_BACKOFF_MAX_SECONDS = 30.0
STATUS_POLL_BASE_SECONDS = 1.0
STATUS_POLL_FACTOR = 1.5
STATUS_POLL_MAX_SECONDS = 5.0
# Identical terminal observations needed before a status is trusted
STATUS_CONFIRMATIONS = 3


class TonWalletService(TransactionSender, TransactionSource):
    """Sender and source for the relay wallet."""

    def __init__(
        self,
        account: WalletAccount,
        signer: Optional[WalletSigner] = None,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        clock: Clock = system_clock,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._account = account
        self._signer = signer
        self._api_url = (api_url or settings.ton_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.ton_api_key
        self._max_retries = max_retries or settings.wallet_send_max_retries
        self._timeout = timeout or settings.http_timeout_seconds
        self._clock = clock
        self._transport = transport
        # seqno each broadcast was signed with, by reference
        self._sent_seqnos: Dict[str, int] = {}

    @property
    def account(self) -> WalletAccount:
        return self._account

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        return headers

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Call toncenter and unwrap its {ok, result} envelope."""
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.request(
                    method,
                    f"{self._api_url}/{endpoint}",
                    headers=self._headers,
                    params=params,
                    json=json_body,
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"toncenter {endpoint} failed: {e}") from e
        except ValueError as e:
            raise ProtocolError(f"toncenter {endpoint} returned invalid JSON: {e}") from e

        if not isinstance(payload, dict) or not payload.get("ok"):
            error = payload.get("error") if isinstance(payload, dict) else payload
            raise ProtocolError(f"toncenter {endpoint} error: {error}")
        return payload.get("result")

    # --- Account reads ---

    async def get_seqno(self) -> int:
        """Current wallet seqno. Never cached: an earlier send may have landed."""
        info = await self._request(
            "GET", "getWalletInformation", params={"address": self.address}
        )
        if not isinstance(info, dict):
            raise ProtocolError("getWalletInformation returned no wallet info")
        return int(info.get("seqno") or 0)

    async def get_balance(self) -> int:
        """Wallet balance in nanoton."""
        balance = await self._request(
            "GET", "getAddressBalance", params={"address": self.address}
        )
        return int(balance)

    # --- Sending ---

    async def send_boc(self, boc: str) -> str:
        """Broadcast a signed external message, returning its hash."""
        result = await self._request("POST", "sendBocReturnHash", json_body={"boc": boc})
        if not isinstance(result, dict) or not result.get("hash"):
            raise ProtocolError("sendBocReturnHash returned no hash")
        return str(result["hash"])

    async def send(
        self,
        to_address: str,
        amount_nano: int,
        comment: Optional[str] = None,
        timeout: int = 60,
    ) -> SendResult:
        if self._signer is None:
            return SendResult(success=False, error="No wallet signer configured")

        last_error = "Unknown transaction error"
        for attempt in range(1, self._max_retries + 1):
            try:
                seqno = await self.get_seqno()
                valid_until = int(self._clock.timestamp()) + timeout
                boc = self._signer.create_transfer(
                    seqno=seqno,
                    to_address=to_address,
                    amount_nano=amount_nano,
                    comment=comment,
                    valid_until=valid_until,
                )
                reference = await self.send_boc(boc)
                self._sent_seqnos[reference] = seqno
                logger.info(
                    f"wallet: sent {amount_nano} nanoton to {to_address}, "
                    f"seqno={seqno}, ref={reference}"
                )
                return SendResult(success=True, reference=reference, boc=boc, seqno=seqno)
            except Exception as e:
                last_error = str(e) or e.__class__.__name__
                logger.error(
                    f"wallet: transfer attempt {attempt}/{self._max_retries} failed: {last_error}"
                )
                if attempt < self._max_retries:
                    delay = min(
                        SEND_BACKOFF_BASE_SECONDS * 2 ** (attempt - 1),
                        SEND_BACKOFF_MAX_SECONDS,
                    )
                    await self._clock.sleep(delay)

        return SendResult(success=False, error=last_error)

    # --- Confirmation ---

    async def check_status(self, reference: str) -> TransferStatus:
        """
        Infer a transfer's status from the wallet's account state.

        Transfers sent by this instance are completed once the wallet seqno
        has moved past the seqno they were signed with. For anything else the
        presence of a last transaction is the only signal available.
        """
        try:
            sent_seqno = self._sent_seqnos.get(reference)
            if sent_seqno is not None:
                seqno = await self.get_seqno()
                return TransferStatus.COMPLETED if seqno > sent_seqno else TransferStatus.PENDING

            info = await self._request(
                "GET", "getAddressInformation", params={"address": self.address}
            )
            info = info or {}
            if info.get("state") == "frozen":
                return TransferStatus.FAILED
            last = info.get("last_transaction_id") or {}
            if not last.get("hash") or str(last.get("lt", "0")) == "0":
                return TransferStatus.PENDING
            return TransferStatus.COMPLETED
        except (NetworkError, ProtocolError) as e:
            logger.warning(f"wallet: status check for {reference} failed: {e}")
            return TransferStatus.PROCESSING

    async def wait_for_completion(self, reference: str, timeout: float = 60.0) -> TransferStatus:
        deadline = self._clock.timestamp() + timeout
        observed: Optional[TransferStatus] = None
        streak = 0
        polls = 0

        while True:
            status = await self.check_status(reference)
            if status in (TransferStatus.COMPLETED, TransferStatus.FAILED):
                streak = streak + 1 if status == observed else 1
                observed = status
                if streak >= STATUS_CONFIRMATIONS:
                    logger.info(f"wallet: transfer {reference} settled as {status.value}")
                    self._sent_seqnos.pop(reference, None)
                    return status
            else:
                observed, streak = None, 0

            remaining = deadline - self._clock.timestamp()
            if remaining <= 0:
                logger.warning(f"wallet: transfer {reference} not settled after {timeout}s")
                return TransferStatus.TIMEOUT

            interval = min(
                STATUS_POLL_BASE_SECONDS * STATUS_POLL_FACTOR**polls, STATUS_POLL_MAX_SECONDS
            )
            polls += 1
            await self._clock.sleep(min(interval, remaining))

    # --- Listing ---

    async def list_incoming(self, payment_filter: IncomingFilter) -> List[WalletPayment]:
        raw = await self._request(
            "GET",
            "getTransactions",
            params={
                "address": self.address,
                "limit": payment_filter.limit,
                "archival": payment_filter.archival,
            },
        )
        if not isinstance(raw, list):
            raise ProtocolError("getTransactions returned no transaction list")

        payments = []
        for tx in raw:
            payment = self._parse_transaction(tx, payment_filter.direction)
            if payment is None:
                continue
            if (
                payment_filter.from_timestamp is not None
                and payment.timestamp < payment_filter.from_timestamp
            ):
                continue
            payments.append(payment)

        payments.sort(key=lambda p: p.timestamp)
        return payments

    def _parse_transaction(
        self, tx: Dict[str, Any], direction: Direction
    ) -> Optional[WalletPayment]:
        reference = (tx.get("transaction_id") or {}).get("hash") or tx.get("hash")
        if not reference:
            return None
        timestamp = int(tx.get("utime") or 0)

        in_msg = tx.get("in_msg") or {}
        if direction in (Direction.INCOMING, Direction.ANY) and in_msg.get("source"):
            value = int(in_msg.get("value") or 0)
            if value > 0:
                return WalletPayment(
                    reference=reference,
                    amount=Decimal(value) / NANOTON_DECIMAL,
                    from_address=in_msg["source"],
                    to_address=self.address,
                    comment=_message_comment(in_msg),
                    timestamp=timestamp,
                    direction=Direction.INCOMING,
                )

        out_msgs = tx.get("out_msgs") or []
        if direction in (Direction.OUTGOING, Direction.ANY) and out_msgs:
            out_msg = out_msgs[0]
            return WalletPayment(
                reference=reference,
                amount=Decimal(int(out_msg.get("value") or 0)) / NANOTON_DECIMAL,
                from_address=self.address,
                to_address=out_msg.get("destination", ""),
                comment=_message_comment(out_msg),
                timestamp=timestamp,
                direction=Direction.OUTGOING,
            )
        return None


def _message_comment(msg: Dict[str, Any]) -> str:
    """Text comment of a toncenter message, empty when there is none."""
    if msg.get("message"):
        return str(msg["message"])
    msg_data = msg.get("msg_data") or {}
    text = msg_data.get("text")
    if msg_data.get("@type") == "msg.dataText" and text:
        try:
            return base64.b64decode(text).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            logger.warning("wallet: undecodable text comment, ignoring")
    return ""
