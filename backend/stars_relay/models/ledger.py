"""
Tortoise ORM models for the payment ledger.

These models track:
- Inbound TON payments and the state of the stars purchase each one triggered
- An append-only audit trail of every status change

Column names are camelCase to stay compatible with the existing database.
"""

from enum import Enum

from tortoise import fields, models


class TransactionStatus(str, Enum):
    """Processing status of an inbound payment."""
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class HistoryAction(str, Enum):
    """What caused a history record to be written."""
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    STARS_SENT = "stars_sent"
    ERROR_OCCURRED = "error_occurred"
    MANUAL_UPDATE = "manual_update"


class Transaction(models.Model):
    """
    One inbound TON payment, keyed by its on-chain hash.

    Status moves (absent|failed) -> processing -> (processed|failed) and never
    leaves processed.
    """
    hash = fields.CharField(max_length=64, pk=True)

    # Payment details
    amount = fields.DecimalField(max_digits=15, decimal_places=9, null=True)
    sender_address = fields.CharField(
        max_length=64, null=True, db_index=True, source_field="senderAddress"
    )
    comment = fields.TextField(null=True)
    username = fields.CharField(max_length=32, null=True, db_index=True)

    # Purchase details
    stars_amount = fields.IntField(null=True, source_field="starsAmount")
    fragment_transaction_hash = fields.CharField(
        max_length=64, null=True, source_field="fragmentTransactionHash"
    )
    outgoing_transaction_hash = fields.CharField(
        max_length=64, null=True, source_field="outgoingTransactionHash"
    )

    status = fields.CharEnumField(
        TransactionStatus, max_length=20, default=TransactionStatus.PROCESSED, db_index=True
    )
    error_message = fields.TextField(null=True, source_field="errorMessage")

    # Pricing snapshot at the time of processing
    gas_fee = fields.DecimalField(max_digits=15, decimal_places=9, null=True, source_field="gasFee")
    amount_after_gas = fields.DecimalField(
        max_digits=15, decimal_places=9, null=True, source_field="amountAfterGas"
    )
    exchange_rate = fields.DecimalField(
        max_digits=15, decimal_places=9, null=True, source_field="exchangeRate"
    )

    # Timestamps
    created_at = fields.DatetimeField(auto_now_add=True, db_index=True, source_field="createdAt")
    updated_at = fields.DatetimeField(auto_now=True, source_field="updatedAt")

    history: fields.ReverseRelation["TransactionHistory"]

    class Meta:
        table = "transactions"

    def __str__(self) -> str:
        return f"Transaction({self.hash}, {self.status})"


class TransactionHistory(models.Model):
    """
    Audit record of a state-affecting operation on a Transaction.

    Rows are only ever inserted; they go away with their Transaction.
    """
    id = fields.UUIDField(pk=True)
    transaction = fields.ForeignKeyField(
        "models.Transaction",
        related_name="history",
        on_delete=fields.CASCADE,
        source_field="transactionHash",
    )
    previous_status = fields.CharEnumField(
        TransactionStatus, max_length=20, null=True, source_field="previousStatus"
    )
    new_status = fields.CharEnumField(TransactionStatus, max_length=20, source_field="newStatus")
    action = fields.CharEnumField(HistoryAction, max_length=50)
    data = fields.JSONField(null=True)
    message = fields.TextField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True, source_field="createdAt")

    class Meta:
        table = "transaction_history"
        ordering = ["created_at"]
