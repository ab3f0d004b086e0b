from decimal import Decimal

NANOTON = 10**9
NANOTON_DECIMAL = Decimal(NANOTON)

# Fragment payment payloads: fixed binary header, then the UTF-8 comment
PAYLOAD_HEADER_SIZE = 17
PAYLOAD_ERROR_PREFIX = "[ERROR"

# Ledger column widths (must match the existing schema)
HASH_MAX_LENGTH = 64
USERNAME_MAX_LENGTH = 32

# Telegram usernames are at least this long
USERNAME_MIN_LENGTH = 5

# Persisted in errorMessage; rows carrying one of these are never retried
INVALID_RECIPIENT = "Invalid recipient"
MISSING_USERNAME = "Missing username"
AMOUNT_OUT_OF_BOUNDS = "Amount out of bounds"
RETRY_LIMIT_REACHED = "Retry limit reached"

NON_RETRYABLE_MARKERS = (
    INVALID_RECIPIENT,
    MISSING_USERNAME,
    AMOUNT_OUT_OF_BOUNDS,
    RETRY_LIMIT_REACHED,
)

# Fragment status HTML fragments that mean the purchase went through
COMPLETION_MARKERS = (
    "purchase has been completed",
    "stars have been credited",
    "successful",
    "успешно зачислены",
)

# Device descriptor Fragment expects next to the wallet account (TON Connect)
FRAGMENT_DEVICE_INFO = {
    "platform": "browser",
    "appName": "telegram-wallet",
    "appVersion": "1",
    "maxProtocolVersion": 2,
    "features": [
        "SendTransaction",
        {"name": "SendTransaction", "maxMessages": 4},
    ],
}
