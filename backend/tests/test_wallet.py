import base64
import json
from decimal import Decimal

import httpx
import pytest

from stars_relay.core.errors import NetworkError, ProtocolError
from stars_relay.wallet import (
    Direction,
    IncomingFilter,
    TonWalletService,
    TransferStatus,
    WalletSigner,
)


class FakeSigner(WalletSigner):
    def __init__(self, account):
        self._account = account
        self.signed = []

    @property
    def account(self):
        return self._account

    def create_transfer(self, seqno, to_address, amount_nano, comment, valid_until):
        self.signed.append((seqno, to_address, amount_nano, comment))
        return f"boc-{seqno}"


class FakeToncenter:
    """Minimal toncenter v2: wallet seqno, broadcasts and a transaction list."""

    def __init__(self, seqno=5, failing_sends=0, transactions=None):
        self.seqno = seqno
        self.failing_sends = failing_sends
        self.transactions = transactions or []
        self.calls = []
        self.advance_on_send = True

    def __call__(self, request: httpx.Request) -> httpx.Response:
        endpoint = request.url.path.rsplit("/", 1)[-1]
        self.calls.append(endpoint)
        if endpoint == "getWalletInformation":
            return httpx.Response(200, json={"ok": True, "result": {"seqno": self.seqno}})
        if endpoint == "sendBocReturnHash":
            if self.failing_sends > 0:
                self.failing_sends -= 1
                return httpx.Response(500, json={"ok": False, "error": "rate limited"})
            boc = json.loads(request.content)["boc"]
            if self.advance_on_send:
                self.seqno += 1
            return httpx.Response(200, json={"ok": True, "result": {"hash": f"hash-{boc}"}})
        if endpoint == "getTransactions":
            return httpx.Response(200, json={"ok": True, "result": self.transactions})
        if endpoint == "getAddressBalance":
            return httpx.Response(200, json={"ok": True, "result": "2500000000"})
        return httpx.Response(404, json={"ok": False, "error": "unknown method"})


def _service(account, fake, clock, signer=True, max_retries=3):
    return TonWalletService(
        account,
        signer=FakeSigner(account) if signer else None,
        api_url="https://toncenter.test/api/v2",
        api_key="key",
        max_retries=max_retries,
        clock=clock,
        transport=httpx.MockTransport(fake),
    )


@pytest.mark.asyncio
async def test_send_refetches_seqno_and_backs_off(account, clock):
    fake = FakeToncenter(seqno=5, failing_sends=2)
    service = _service(account, fake, clock)

    result = await service.send("EQFragment", 1_000_000_000, "comment")

    assert result.success
    assert result.reference == "hash-boc-5"
    assert result.seqno == 5
    assert clock.sleeps == [1.0, 2.0]
    assert fake.calls.count("getWalletInformation") == 3


@pytest.mark.asyncio
async def test_send_gives_up_after_max_retries(account, clock):
    fake = FakeToncenter(failing_sends=10)
    service = _service(account, fake, clock)

    result = await service.send("EQFragment", 1_000_000_000)

    assert not result.success
    assert "sendBocReturnHash" in result.error
    assert clock.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_send_backoff_is_capped(account, clock):
    fake = FakeToncenter(failing_sends=10)
    service = _service(account, fake, clock, max_retries=7)

    await service.send("EQFragment", 1)

    assert clock.sleeps == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


@pytest.mark.asyncio
async def test_send_without_signer_fails_fast(account, clock):
    fake = FakeToncenter()
    service = _service(account, fake, clock, signer=False)

    result = await service.send("EQFragment", 1)

    assert not result.success
    assert fake.calls == []


@pytest.mark.asyncio
async def test_wait_for_completion_needs_three_identical_statuses(account, clock):
    fake = FakeToncenter(seqno=5)
    service = _service(account, fake, clock)
    sent = await service.send("EQFragment", 1)

    status = await service.wait_for_completion(sent.reference, timeout=60)

    assert status == TransferStatus.COMPLETED
    assert clock.sleeps == [1.0, 1.5]
    assert sent.reference not in service._sent_seqnos


@pytest.mark.asyncio
async def test_wait_for_completion_times_out(account, clock):
    fake = FakeToncenter(seqno=5)
    fake.advance_on_send = False
    service = _service(account, fake, clock)
    sent = await service.send("EQFragment", 1)

    status = await service.wait_for_completion(sent.reference, timeout=10)

    assert status == TransferStatus.TIMEOUT
    assert sum(clock.sleeps) == pytest.approx(10)
    assert max(clock.sleeps) <= 5.0
    assert sent.reference in service._sent_seqnos


@pytest.mark.asyncio
async def test_list_incoming_parses_filters_and_sorts(account, clock):
    text = base64.b64encode("bob".encode()).decode()
    fake = FakeToncenter(
        transactions=[
            {
                "transaction_id": {"hash": "tx-new", "lt": "3"},
                "utime": 1_700_000_300,
                "in_msg": {"source": "UQSender", "value": "2500000000", "message": "@alice"},
                "out_msgs": [],
            },
            {
                "transaction_id": {"hash": "tx-text", "lt": "2"},
                "utime": 1_700_000_200,
                "in_msg": {
                    "source": "UQOther",
                    "value": "1000000000",
                    "msg_data": {"@type": "msg.dataText", "text": text},
                },
                "out_msgs": [],
            },
            {
                "transaction_id": {"hash": "tx-out", "lt": "1"},
                "utime": 1_700_000_250,
                "in_msg": {"source": "", "value": "0"},
                "out_msgs": [{"destination": "EQFragment", "value": "500000000"}],
            },
            {
                "transaction_id": {"hash": "tx-old", "lt": "0"},
                "utime": 1_600_000_000,
                "in_msg": {"source": "UQSender", "value": "1"},
                "out_msgs": [],
            },
        ]
    )
    service = _service(account, fake, clock)

    payments = await service.list_incoming(IncomingFilter(limit=10, from_timestamp=1_700_000_000))

    assert [p.reference for p in payments] == ["tx-text", "tx-new"]
    assert payments[0].comment == "bob"
    assert payments[1].amount == Decimal("2.5")
    assert payments[1].comment == "@alice"
    assert all(p.direction == Direction.INCOMING for p in payments)


@pytest.mark.asyncio
async def test_list_outgoing(account, clock):
    fake = FakeToncenter(
        transactions=[
            {
                "transaction_id": {"hash": "tx-out"},
                "utime": 1_700_000_250,
                "in_msg": {},
                "out_msgs": [{"destination": "EQFragment", "value": "500000000", "message": "hi"}],
            }
        ]
    )
    service = _service(account, fake, clock)

    payments = await service.list_incoming(IncomingFilter(direction=Direction.OUTGOING))

    assert len(payments) == 1
    assert payments[0].to_address == "EQFragment"
    assert payments[0].from_address == account.address
    assert payments[0].amount == Decimal("0.5")


@pytest.mark.asyncio
async def test_get_balance(account, clock):
    service = _service(account, FakeToncenter(), clock)

    assert await service.get_balance() == 2_500_000_000


@pytest.mark.asyncio
async def test_error_envelope_is_protocol_error(account, clock):
    def handler(request):
        return httpx.Response(200, json={"ok": False, "error": "invalid address"})

    service = TonWalletService(account, transport=httpx.MockTransport(handler), clock=clock)

    with pytest.raises(ProtocolError):
        await service.get_seqno()


@pytest.mark.asyncio
async def test_connection_failure_is_network_error(account, clock):
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    service = TonWalletService(account, transport=httpx.MockTransport(handler), clock=clock)

    with pytest.raises(NetworkError):
        await service.get_seqno()


@pytest.mark.asyncio
async def test_api_key_header(account, clock):
    seen = []

    def handler(request):
        seen.append(request.headers.get("X-API-Key"))
        return httpx.Response(200, json={"ok": True, "result": {"seqno": 1}})

    service = TonWalletService(
        account, api_key="secret", transport=httpx.MockTransport(handler), clock=clock
    )
    await service.get_seqno()

    assert seen == ["secret"]
