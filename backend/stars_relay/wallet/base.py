"""
Abstract base classes for the TON wallet collaborators.

The purchase flow needs three things from the chain side:
1. A signer that turns (seqno, destination, amount, comment) into a signed
   external message. Key handling lives entirely behind this interface.
2. A sender that broadcasts signed transfers and confirms them.
3. A source that enumerates payments received by the wallet.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional


class TransferStatus(str, Enum):
    """On-chain status of an outgoing transfer."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class Direction(str, Enum):
    """Which side of the wallet a listed transaction is on."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"
    ANY = "any"


@dataclass(frozen=True)
class WalletAccount:
    """TON Connect account descriptor, loaded once at startup."""
    address: str
    chain: str
    public_key: str
    wallet_state_init: str

    def to_json(self) -> str:
        # Field names are the ones Fragment expects
        return json.dumps(
            {
                "address": self.address,
                "chain": self.chain,
                "publicKey": self.public_key,
                "walletStateInit": self.wallet_state_init,
            }
        )


@dataclass
class WalletPayment:
    """A transfer seen on the wallet, amount in TON."""
    reference: str
    amount: Decimal
    from_address: str
    comment: str
    timestamp: int
    to_address: str = ""
    direction: Direction = Direction.INCOMING


@dataclass
class IncomingFilter:
    limit: int = 20
    from_timestamp: Optional[int] = None
    archival: bool = False
    direction: Direction = Direction.INCOMING


@dataclass
class SendResult:
    success: bool
    reference: Optional[str] = None
    boc: Optional[str] = None
    seqno: Optional[int] = None
    error: Optional[str] = None


class WalletSigner(ABC):
    """
    Signs wallet transfers.

    Implementations own the private key; nothing else in the relay sees it.
    """

    @property
    @abstractmethod
    def account(self) -> WalletAccount:
        """Return the account this signer controls."""
        pass

    @abstractmethod
    def create_transfer(
        self,
        seqno: int,
        to_address: str,
        amount_nano: int,
        comment: Optional[str],
        valid_until: int,
    ) -> str:
        """
        Build and sign an external transfer message.

        Returns: the message as a base64-encoded BOC
        """
        pass


class TransactionSender(ABC):
    """Broadcasts transfers from the relay wallet."""

    @abstractmethod
    async def send(
        self,
        to_address: str,
        amount_nano: int,
        comment: Optional[str] = None,
        timeout: int = 60,
    ) -> SendResult:
        """Sign and broadcast a transfer, retrying with backoff."""
        pass

    @abstractmethod
    async def wait_for_completion(self, reference: str, timeout: float = 60.0) -> TransferStatus:
        """Block until the transfer settles or ``timeout`` seconds pass."""
        pass


class TransactionSource(ABC):
    """Enumerates transactions of the relay wallet."""

    @abstractmethod
    async def list_incoming(self, payment_filter: IncomingFilter) -> List[WalletPayment]:
        """Return matching payments, oldest first."""
        pass
