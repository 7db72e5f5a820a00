import json
import logging
from pathlib import Path
from typing import Any

from solders.keypair import Keypair

from ..errors import MalformedKeyError

logger = logging.getLogger(__name__)

SECRET_KEY_LENGTH = 64


def keypair_from_bytes(raw: bytes | bytearray | list[int]) -> Keypair:
    """Turn raw secret-key bytes into a signing identity.

    Args:
        raw: 64 bytes, the 32-byte seed followed by the 32-byte public key

    Returns:
        The loaded Keypair

    Raises:
        MalformedKeyError: If the length or structure is wrong
    """
    if isinstance(raw, list):
        if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255 for b in raw):
            raise MalformedKeyError("Secret key must be a list of integers between 0 and 255")
        raw = bytes(raw)

    if len(raw) != SECRET_KEY_LENGTH:
        raise MalformedKeyError(
            f"Secret key must be {SECRET_KEY_LENGTH} bytes, got {len(raw)}"
        )

    try:
        keypair = Keypair.from_bytes(bytes(raw))
    except Exception as e:
        raise MalformedKeyError(f"Invalid secret key: {e}") from e

    # The trailing half must be the public key derived from the seed
    if bytes(keypair.pubkey()) != bytes(raw[32:]):
        raise MalformedKeyError("Secret key does not match its embedded public key")

    return keypair


def parse_keypair_json(text: str) -> Keypair:
    """Parse a JSON array of integers (the CLI key-file format)."""
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedKeyError(f"Key file is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise MalformedKeyError("Key file must contain a JSON array of integers")

    return keypair_from_bytes(data)


def load_keypair(path: str | Path) -> Keypair:
    """Load a keypair from a JSON key file.

    Args:
        path: Location of the key file

    Returns:
        The loaded Keypair

    Raises:
        FileNotFoundError: If the file does not exist
        MalformedKeyError: If the file content is not a valid secret key
    """
    key_path = Path(path).expanduser()
    logger.debug(f"Loading keypair from {key_path}")
    keypair = parse_keypair_json(key_path.read_text(encoding="utf-8"))
    logger.debug(f"Loaded keypair for {keypair.pubkey()}")
    return keypair
