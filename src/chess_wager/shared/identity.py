import secrets
from typing import Optional

from solders.pubkey import Pubkey

# Excludes I, O, 0 and 1
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 6

def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))

def normalize_code(code: Optional[str]) -> str:
    """Room codes are looked up case-insensitively."""
    return (code or "").strip().upper()

def is_valid_wallet(address: Optional[str]) -> bool:
    """Plausible base58 ed25519 public key (32..44 chars, decodes to 32 bytes)."""
    if not address or not isinstance(address, str):
        return False
    if not 32 <= len(address) <= 44:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True

def short_wallet(wallet: Optional[str]) -> str:
    if not wallet:
        return "Anonymous"
    return f"{wallet[:6]}..."
