"""
Fragment.com stars purchase client.

Drives Fragment's private, form-encoded purchase API. The server keeps a
session per request id that moves through modes new -> processing -> done
and rotates a nonce ``dh`` on every answer; both are carried in a
PurchaseSession the caller owns and passes to every call.
"""

import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from stars_relay.core.config import settings
from stars_relay.core.constants import FRAGMENT_DEVICE_INFO, INVALID_RECIPIENT
from stars_relay.core.errors import NetworkError, NotFoundError, ProtocolError
from stars_relay.wallet.base import WalletAccount

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/134.0.0.0 Safari/537.36"
)

# cur_price comes back as HTML, e.g. ">1,234<span class="mini-frac">.56</span>"
PRICE_PATTERN = re.compile(r'>([\d,.]+)<span class="mini-frac">\.(\d+)</span>')


@dataclass
class PurchaseSession:
    """Per-purchase protocol state. Never shared between purchases."""
    req_id: str = ""
    mode: str = "new"
    dh: str = ""
    recipient_id: str = ""


@dataclass
class PaymentButton:
    address: str = ""
    amount: str = ""
    payload: str = ""


@dataclass
class PurchaseInit:
    req_id: str
    amount: Decimal
    button: PaymentButton = field(default_factory=PaymentButton)


@dataclass
class PaymentInstruction:
    """One on-chain message Fragment wants the wallet to send."""
    address: str
    amount: int
    payload: str = ""


@dataclass
class PollResult:
    ok: bool
    mode: str
    dh: str = ""
    need_update: bool = False
    html: Optional[str] = None
    error: Optional[str] = None


@dataclass
class StarsPrice:
    quantity: int
    ton_price: Decimal
    stars_per_ton: Decimal


def _random_dh() -> str:
    return str(100_000_000 + secrets.randbelow(900_000_000))


class FragmentClient:
    """Client for the Fragment stars purchase API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_hash: Optional[str] = None,
        cookies: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.fragment_base_url).rstrip("/")
        self._api_hash = api_hash if api_hash is not None else settings.fragment_api_hash
        self._cookies = cookies if cookies is not None else settings.fragment_cookies
        self._timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    def _headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/json, text/javascript, */*; q=0.01",
            "Accept-Language": "en-US,en;q=0.9",
            "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
            "Origin": self._base_url,
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
            "User-Agent": USER_AGENT,
            "X-Requested-With": "XMLHttpRequest",
        }
        if referer:
            headers["Referer"] = f"{self._base_url}{referer}"
        if self._cookies:
            headers["Cookie"] = "; ".join(f"{k}={v}" for k, v in self._cookies.items())
        return headers

    async def _call(
        self,
        session: Optional[PurchaseSession],
        method: str,
        params: Dict[str, Any],
        referer: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        POST one API method and return the decoded JSON body.

        Any ``mode``/``dh`` in the answer is absorbed into ``session``,
        whichever method produced it.
        """
        data = {"hash": self._api_hash, **params, "method": method}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    f"{self._base_url}/api", data=data, headers=self._headers(referer)
                )
                resp.raise_for_status()
                body = resp.json()
        except httpx.HTTPError as e:
            raise NetworkError(f"Fragment {method} failed: {e}") from e
        except ValueError as e:
            raise ProtocolError(f"Fragment {method} returned invalid JSON: {e}") from e

        if not isinstance(body, dict):
            raise ProtocolError(f"Fragment {method} returned {type(body).__name__}, expected object")

        if session is not None:
            if body.get("mode"):
                session.mode = str(body["mode"])
            if body.get("dh"):
                session.dh = str(body["dh"])
        return body

    async def search_recipient(
        self, session: PurchaseSession, username: str, quantity: int
    ) -> str:
        """Resolve a Telegram username to Fragment's opaque recipient id."""
        logger.info(f"fragment: searching recipient {username} for {quantity} stars")
        body = await self._call(
            session,
            "searchStarsRecipient",
            {"query": username, "quantity": quantity},
            referer=f"/stars/buy?quantity={quantity}",
        )
        if body.get("error"):
            raise NotFoundError(f"{INVALID_RECIPIENT}: {username} ({body['error']})")

        recipient_id = (body.get("found") or {}).get("recipient")
        if not recipient_id:
            raise NotFoundError(f"{INVALID_RECIPIENT}: {username} not found")
        session.recipient_id = recipient_id
        return recipient_id

    async def init_purchase(
        self, session: PurchaseSession, recipient_id: str, quantity: int
    ) -> PurchaseInit:
        body = await self._call(
            session,
            "initBuyStarsRequest",
            {"recipient": recipient_id, "quantity": quantity},
            referer=f"/stars/buy?recipient={recipient_id}&quantity={quantity}",
        )
        if body.get("error"):
            raise ProtocolError(f"initBuyStarsRequest error: {body['error']}")

        # Fields may sit at the root or under "result"
        result = body.get("result") if isinstance(body.get("result"), dict) else {}
        req_id = body.get("req_id") or result.get("req_id")
        if not req_id:
            raise ProtocolError("initBuyStarsRequest response has no req_id")

        try:
            amount = Decimal(str(body.get("amount") or result.get("amount") or "0"))
        except InvalidOperation as e:
            raise ProtocolError(f"initBuyStarsRequest returned a bad amount: {e}") from e
        button = body.get("button") or result.get("button") or {}

        session.req_id = str(req_id)
        logger.info(f"fragment: purchase initialised, req_id={req_id}, amount={amount}")
        return PurchaseInit(
            req_id=str(req_id),
            amount=amount,
            button=PaymentButton(
                address=button.get("address", ""),
                amount=str(button.get("amount") or amount),
                payload=button.get("payload", ""),
            ),
        )

    async def fetch_payment_instructions(
        self,
        session: PurchaseSession,
        req_id: str,
        account: WalletAccount,
        show_sender: bool = False,
    ) -> List[PaymentInstruction]:
        body = await self._call(
            session,
            "getBuyStarsLink",
            {
                "account": account.to_json(),
                "device": json.dumps(FRAGMENT_DEVICE_INFO),
                "transaction": "1",
                "id": req_id,
                "show_sender": "1" if show_sender else "0",
            },
        )
        if body.get("error"):
            raise ProtocolError(f"getBuyStarsLink error: {body['error']}")

        transaction = body.get("transaction")
        if not isinstance(transaction, dict):
            result = body.get("result") or {}
            transaction = result.get("transaction") if isinstance(result, dict) else None
        messages = transaction.get("messages") if isinstance(transaction, dict) else None
        if not isinstance(messages, list) or not messages:
            raise ProtocolError("getBuyStarsLink response has no transaction messages")

        instructions = []
        for message in messages:
            try:
                instructions.append(
                    PaymentInstruction(
                        address=message["address"],
                        amount=int(message["amount"]),
                        payload=message.get("payload", ""),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ProtocolError(f"getBuyStarsLink returned a malformed message: {e}") from e
        return instructions

    async def confirm_payment(
        self, session: PurchaseSession, req_id: str, boc: str, account: WalletAccount
    ) -> bool:
        """Tell Fragment the payment was broadcast. Never raises."""
        try:
            body = await self._call(
                session,
                "confirmReq",
                {
                    "account": account.to_json(),
                    "device": json.dumps(FRAGMENT_DEVICE_INFO),
                    "boc": boc,
                    "id": req_id,
                },
                referer=f"/stars/buy?req_id={req_id}",
            )
        except (NetworkError, ProtocolError) as e:
            logger.warning(f"fragment: confirmReq for {req_id} failed: {e}")
            return False

        if body.get("ok") is True:
            logger.info(f"fragment: payment {req_id} confirmed")
            return True
        logger.warning(f"fragment: confirmReq for {req_id} rejected: {body.get('error')}")
        return False

    async def poll_status(
        self, session: PurchaseSession, req_id: str, mode: Optional[str] = None
    ) -> PollResult:
        """
        One updateStarsBuyState round trip.

        Soft-fails: transport and parse problems come back as ``ok=False``
        with the reason in ``error`` so polling loops can simply try again.
        """
        mode = mode or session.mode
        if not session.dh:
            session.dh = _random_dh()
        dh = session.dh

        try:
            body = await self._call(
                session,
                "updateStarsBuyState",
                {"req_id": req_id, "mode": mode, "lv": "false", "dh": dh},
                referer=f"/stars/buy?req_id={req_id}",
            )
        except (NetworkError, ProtocolError) as e:
            logger.warning(f"fragment: status poll for {req_id} failed: {e}")
            return PollResult(ok=False, mode=session.mode, dh=dh, error=str(e))

        return PollResult(
            ok=bool(body.get("ok")),
            mode=session.mode,
            dh=str(body.get("dh") or dh),
            need_update=bool(body.get("need_update")),
            html=body.get("html"),
            error=body.get("error"),
        )

    async def get_stars_price(self, quantity: int = 50) -> StarsPrice:
        """Current TON price of ``quantity`` stars, and the implied stars per TON."""
        body = await self._call(
            None,
            "updateStarsPrices",
            {"stars": quantity, "quantity": quantity},
            referer=f"/stars/buy?quantity={quantity}",
        )
        if not body.get("ok"):
            raise ProtocolError("updateStarsPrices returned an error")

        match = PRICE_PATTERN.search(body.get("cur_price") or "")
        if not match:
            raise ProtocolError("updateStarsPrices response has no parsable cur_price")
        ton_price = Decimal(f"{match.group(1).replace(',', '')}.{match.group(2)}")
        if ton_price <= 0:
            raise ProtocolError(f"updateStarsPrices returned non-positive price {ton_price}")

        return StarsPrice(
            quantity=quantity,
            ton_price=ton_price,
            stars_per_ton=Decimal(quantity) / ton_price,
        )
