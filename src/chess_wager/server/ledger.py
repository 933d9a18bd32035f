"""
Ledger boundary.

The core only needs three things from the chain: look a transaction up by
signature, derive the token deposit address of an owner, and submit a signed
token transfer. `LedgerClient` is that contract; `SolanaLedgerClient` talks
JSON-RPC over httpx and builds transactions with solders.
"""

import base64
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from chess_wager.server.config import Settings

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# SPL token instruction index for a plain Transfer
TRANSFER_INSTRUCTION = 3
# SPL amounts are u64
MAX_RAW_AMOUNT = 2 ** 64 - 1

class LedgerError(Exception):
    """Network, RPC or address-resolution failure."""

@dataclass
class LedgerTransaction:
    signature: str
    found: bool
    succeeded: bool = False
    error: Optional[str] = None
    # (owner, mint) -> net raw-unit balance change caused by the transaction
    credits: Dict[Tuple[str, str], int] = field(default_factory=dict)

    def credited(self, owner: str, mint: str) -> int:
        return self.credits.get((owner, mint), 0)

class LedgerClient(ABC):
    # Address that signs payouts; None means receive-only mode
    signer_address: Optional[str] = None

    @abstractmethod
    def fetch_transaction(self, signature: str) -> LedgerTransaction:
        ...

    @abstractmethod
    def deposit_address(self, owner: str, mint: str) -> str:
        ...

    @abstractmethod
    def submit_transfer(self, source: str, destination: str, amount_raw: int) -> str:
        """Signs with the platform key and returns the ledger transaction id."""

    def close(self) -> None:
        pass

def load_keypair(secret: str) -> Optional[Keypair]:
    if not secret:
        return None
    # Malformed input makes the solders parser panic rather than raise
    if not 80 <= len(secret) <= 90 or any(c not in BASE58_ALPHABET for c in secret):
        logger.error("Wallet error: secret key is not a base58 keypair")
        return None
    try:
        return Keypair.from_base58_string(secret)
    except ValueError as e:
        logger.error(f"Wallet error: {e}")
        return None

def token_credits(meta: Dict[str, Any]) -> Dict[Tuple[str, str], int]:
    """Net token balance change per (owner, mint) from pre/post token balances."""
    deltas: Dict[Tuple[str, str], int] = defaultdict(int)
    for sign, key in ((-1, "preTokenBalances"), (1, "postTokenBalances")):
        for entry in meta.get(key) or []:
            owner = entry.get("owner")
            mint = entry.get("mint")
            if not owner or not mint:
                continue
            amount = int((entry.get("uiTokenAmount") or {}).get("amount") or 0)
            deltas[(owner, mint)] += sign * amount
    return dict(deltas)

class SolanaLedgerClient(LedgerClient):
    def __init__(self, rpc_url: str, signer: Optional[Keypair] = None, token_2022: bool = True,
                 timeout: float = 20.0, http_client: Optional[httpx.Client] = None):
        self.rpc_url = rpc_url
        self.signer = signer
        self.signer_address = str(signer.pubkey()) if signer else None
        self.token_program = TOKEN_2022_PROGRAM_ID if token_2022 else TOKEN_PROGRAM_ID
        self.client = http_client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SolanaLedgerClient":
        return cls(
            settings.rpc_url,
            signer=load_keypair(settings.wallet_private_key),
            token_2022=settings.token_2022,
            timeout=settings.ledger_timeout_seconds,
        )

    def close(self) -> None:
        self.client.close()

    def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = self.client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise LedgerError(f"{method} failed: {e}") from e
        if body.get("error"):
            raise LedgerError(f"{method} failed: {body['error'].get('message', body['error'])}")
        return body.get("result")

    def fetch_transaction(self, signature: str) -> LedgerTransaction:
        result = self._rpc("getTransaction", [
            signature,
            {"encoding": "jsonParsed", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
        ])
        if not result:
            return LedgerTransaction(signature=signature, found=False)

        meta = result.get("meta") or {}
        err = meta.get("err")
        return LedgerTransaction(
            signature=signature,
            found=True,
            succeeded=err is None,
            error=str(err) if err is not None else None,
            credits=token_credits(meta),
        )

    def deposit_address(self, owner: str, mint: str) -> str:
        try:
            owner_pk = Pubkey.from_string(owner)
            mint_pk = Pubkey.from_string(mint)
        except ValueError as e:
            raise LedgerError(f"Invalid address: {e}") from e
        ata, _bump = Pubkey.find_program_address(
            [bytes(owner_pk), bytes(self.token_program), bytes(mint_pk)],
            ASSOCIATED_TOKEN_PROGRAM_ID,
        )
        return str(ata)

    def submit_transfer(self, source: str, destination: str, amount_raw: int) -> str:
        if self.signer is None:
            raise LedgerError("No signing key configured")
        try:
            source_pk = Pubkey.from_string(source)
            dest_pk = Pubkey.from_string(destination)
        except ValueError as e:
            raise LedgerError(f"Invalid address: {e}") from e

        if not 0 < int(amount_raw) <= MAX_RAW_AMOUNT:
            raise LedgerError(f"Transfer amount out of range: {amount_raw}")
        owner = self.signer.pubkey()
        data = bytes([TRANSFER_INSTRUCTION]) + int(amount_raw).to_bytes(8, "little")
        ix = Instruction(self.token_program, data, [
            AccountMeta(source_pk, is_signer=False, is_writable=True),
            AccountMeta(dest_pk, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ])

        latest = self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        try:
            blockhash = Hash.from_string(latest["value"]["blockhash"])
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerError(f"getLatestBlockhash returned no usable blockhash: {latest!r}") from e
        message = Message.new_with_blockhash([ix], owner, blockhash)
        tx = Transaction([self.signer], message, blockhash)

        raw = base64.b64encode(bytes(tx)).decode("ascii")
        return self._rpc("sendTransaction", [raw, {"encoding": "base64"}])
