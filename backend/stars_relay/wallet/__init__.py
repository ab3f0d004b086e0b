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
from stars_relay.wallet.toncenter import TonWalletService

__all__ = [
    "Direction",
    "IncomingFilter",
    "SendResult",
    "TransactionSender",
    "TransactionSource",
    "TransferStatus",
    "WalletAccount",
    "WalletPayment",
    "WalletSigner",
    "TonWalletService",
]
