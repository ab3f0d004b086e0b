import base64
import logging

from stars_relay.core.constants import PAYLOAD_ERROR_PREFIX, PAYLOAD_HEADER_SIZE

logger = logging.getLogger(__name__)


def decode_payload_comment(payload: str) -> str:
    """
    Extract the human-readable comment from a Fragment payment payload.

    The payload is base64 (often with its padding stripped) of a fixed
    17-byte binary header followed by the UTF-8 comment text. Never raises:
    anything undecodable comes back as an ``[ERROR: ...]`` string, which
    is_decode_error recognises.
    """
    try:
        padded = payload + "=" * (-len(payload) % 4)
        raw = base64.b64decode(padded)
        if len(raw) <= PAYLOAD_HEADER_SIZE:
            return f"{PAYLOAD_ERROR_PREFIX}: payload too short ({len(raw)} bytes)]"
        return raw[PAYLOAD_HEADER_SIZE:].decode("utf-8")
    except (ValueError, TypeError) as e:
        logger.warning(f"payload: could not decode comment: {e}")
        return f"{PAYLOAD_ERROR_PREFIX}: {e}]"


def is_decode_error(comment: str) -> bool:
    return comment.startswith(PAYLOAD_ERROR_PREFIX)
