import base64

from stars_relay.core.constants import PAYLOAD_HEADER_SIZE
from stars_relay.services.payload import decode_payload_comment, is_decode_error


def _encode(raw: bytes, strip_padding: bool = True) -> str:
    encoded = base64.b64encode(raw).decode()
    return encoded.rstrip("=") if strip_padding else encoded


def test_decodes_comment_after_header():
    raw = bytes(PAYLOAD_HEADER_SIZE) + "50 Telegram Stars for @alice\n\nRef#Xy12".encode()
    assert decode_payload_comment(_encode(raw)) == "50 Telegram Stars for @alice\n\nRef#Xy12"


def test_accepts_padded_payload():
    raw = b"\x00" * PAYLOAD_HEADER_SIZE + b"hello"
    assert decode_payload_comment(_encode(raw, strip_padding=False)) == "hello"


def test_header_only_payload_returns_error_string():
    result = decode_payload_comment(_encode(bytes(PAYLOAD_HEADER_SIZE)))
    assert result.startswith("[ERROR")


def test_short_payload_returns_error_string():
    result = decode_payload_comment(_encode(b"abc"))
    assert result.startswith("[ERROR")
    assert "3 bytes" in result


def test_empty_payload_returns_error_string():
    assert decode_payload_comment("").startswith("[ERROR")


def test_invalid_utf8_tail_returns_error_string():
    raw = bytes(PAYLOAD_HEADER_SIZE) + b"\xff\xfe\xfd"
    assert decode_payload_comment(_encode(raw)).startswith("[ERROR")


def test_garbage_input_never_raises():
    assert decode_payload_comment("!!!not base64!!!").startswith("[ERROR")


def test_is_decode_error():
    assert is_decode_error(decode_payload_comment(_encode(b"abc")))
    assert not is_decode_error("50 Telegram Stars for @alice")
