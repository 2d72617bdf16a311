"""
MessagePack codec for the real-time channel.

Outbound events are pydantic model dumps; inbound frames must decode to a
map. Limits are sized for a host submitting a few large song pools in one
finalize/start command.
"""

from enum import Enum
from typing import Any

import msgpack


def _to_wire(obj: object) -> object:
    """
    Recursively convert values msgpack cannot pack as-is.

    Integer map keys become strings and enum members become their values.
    """
    if isinstance(obj, dict):
        return {str(k) if isinstance(k, int) else _to_wire(k): _to_wire(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_to_wire(item) for item in obj]
    if isinstance(obj, Enum):
        return obj.value
    return obj


def encode(data: dict[str, Any]) -> bytes:
    return msgpack.packb(_to_wire(data))


class DecodeError(Exception):
    """Error raised when MessagePack decoding fails."""


# Size limits to prevent resource exhaustion from malicious payloads.
MAX_BUFFER_LEN = 2 * 1024 * 1024  # 2MB total payload
MAX_STR_LEN = 64 * 1024  # 64KB per string
MAX_BIN_LEN = 64 * 1024  # 64KB per binary
MAX_ARRAY_LEN = 5000  # max array elements
MAX_MAP_LEN = 256  # max map entries
MAX_EXT_LEN = 1024  # max extension data


def decode(data: bytes) -> dict[str, Any]:
    """
    Decode MessagePack bytes to a dict.

    Raises DecodeError if data is invalid, not a dict, or exceeds size limits.
    """
    if len(data) > MAX_BUFFER_LEN:
        raise DecodeError(f"payload too large: {len(data)} bytes (max {MAX_BUFFER_LEN})")
    try:
        result = msgpack.unpackb(
            data,
            raw=False,
            max_str_len=MAX_STR_LEN,
            max_bin_len=MAX_BIN_LEN,
            max_array_len=MAX_ARRAY_LEN,
            max_map_len=MAX_MAP_LEN,
            max_ext_len=MAX_EXT_LEN,
        )
    except (msgpack.UnpackException, ValueError) as e:
        raise DecodeError(f"failed to decode MessagePack data: {e}") from e

    if not isinstance(result, dict):
        raise DecodeError(f"expected dict, got {type(result).__name__}")

    return result
