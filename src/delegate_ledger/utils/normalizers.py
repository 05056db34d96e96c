import re
from typing import Any, List

from web3 import Web3

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_hex(value: Any) -> str:
    """Convert bytes-like or hex-string values to lower-case 0x-prefixed hex."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Web3.to_hex(bytes(value)).lower()
    text = str(value)
    if not text.startswith("0x"):
        text = "0x" + text
    return text.lower()


def normalize_address(address: str) -> str:
    if not ADDRESS_PATTERN.match(address or ""):
        raise ValueError(f"invalid address: {address}")
    return address.lower()


def is_valid_address(address: str) -> bool:
    return bool(address) and bool(ADDRESS_PATTERN.match(address))


def address_to_topic(address: str) -> str:
    """Left-pad an address to a 32-byte indexed topic."""
    return "0x" + "0" * 24 + normalize_address(address)[2:]


def topic_to_address(topic: str) -> str:
    topic = normalize_hex(topic)
    if len(topic) != 66:
        raise ValueError(f"unexpected topic format: {topic}")
    return "0x" + topic[-40:]


def decode_words(data: str, count: int) -> List[int]:
    """Split ABI-encoded static data into ``count`` uint256 words."""
    hex_str = normalize_hex(data)[2:]
    need = 64 * count
    if len(hex_str) < need:
        raise ValueError(f"data too short: need {need} hex chars, got {len(hex_str)}")
    return [int(hex_str[i : i + 64], 16) for i in range(0, need, 64)]


def event_topic(signature: str) -> str:
    """keccak topic0 for an event signature such as ``Transfer(address,address,uint256)``."""
    return Web3.to_hex(Web3.keccak(text=signature)).lower()


def to_checksum(address: str) -> str:
    return Web3.to_checksum_address(address)
