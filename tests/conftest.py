"""Shared fixtures: in-memory fakes for the ledger, price feed and wall clock."""

import threading
from typing import Dict, List, Optional, Tuple

import pytest
from solders.keypair import Keypair

from chess_wager.server.config import Settings
from chess_wager.server.engine import RoomEngine
from chess_wager.server.history import MatchHistory
from chess_wager.server.ledger import LedgerClient, LedgerError, LedgerTransaction
from chess_wager.server.registry import MatchRegistry, ReplayGuard
from chess_wager.server.settlement import SettlementEngine

TOKEN_MINT = str(Keypair().pubkey())

def new_wallet() -> str:
    return str(Keypair().pubkey())

class FakeLedger(LedgerClient):
    """Scriptable ledger. Unknown signatures are reported as not found."""

    def __init__(self, signer_address: Optional[str] = None):
        self.signer_address = signer_address
        self.transactions: Dict[str, LedgerTransaction] = {}
        self.fetch_error: Optional[str] = None
        self.transfer_error: Optional[str] = None
        self.transfers: List[Tuple[str, str, int]] = []
        self.fetch_calls = 0
        # Set to make fetch_transaction block until released
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def add_tx(self, signature: str, succeeded: bool = True, credits=None) -> None:
        self.transactions[signature] = LedgerTransaction(
            signature=signature, found=True, succeeded=succeeded,
            error=None if succeeded else "InstructionError", credits=credits or {},
        )

    def fetch_transaction(self, signature: str) -> LedgerTransaction:
        with self._lock:
            self.fetch_calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fetch_error:
            raise LedgerError(self.fetch_error)
        return self.transactions.get(signature, LedgerTransaction(signature=signature, found=False))

    def deposit_address(self, owner: str, mint: str) -> str:
        return f"ata:{owner}"

    def submit_transfer(self, source: str, destination: str, amount_raw: int) -> str:
        if self.transfer_error:
            raise LedgerError(self.transfer_error)
        with self._lock:
            self.transfers.append((source, destination, amount_raw))
            return f"payout-{len(self.transfers)}"

class FakeOracle:
    def __init__(self, price: float = 0.25):
        self.price = price

    def get_price(self) -> float:
        return self.price

    def close(self) -> None:
        pass

class ManualClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

@pytest.fixture
def settings() -> Settings:
    return Settings(
        wallet_address=new_wallet(),
        token_mint=TOKEN_MINT,
        game_time_ms=600_000,
        database_url="",
    )

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()

@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle(price=0.25)

@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger(signer_address=new_wallet())

@pytest.fixture
def history(clock) -> MatchHistory:
    h = MatchHistory("sqlite://", clock=clock)
    yield h
    h.close()

@pytest.fixture
def registry(settings, oracle, clock) -> MatchRegistry:
    return MatchRegistry(settings, oracle, clock=clock)

@pytest.fixture
def settlement(ledger, settings, clock) -> SettlementEngine:
    return SettlementEngine(ledger, settings, clock=clock)

@pytest.fixture
def engine(registry, ledger, settlement, settings, clock) -> RoomEngine:
    return RoomEngine(registry, ledger, settlement, settings,
                      replay_guard=ReplayGuard(), clock_fn=clock)

@pytest.fixture
def white() -> str:
    return new_wallet()

@pytest.fixture
def black() -> str:
    return new_wallet()

@pytest.fixture
def playing_room(engine, ledger, white, black):
    """A room with both seats taken and paid, white to move."""
    code = engine.create_room(5, white).room.code
    engine.join_room(code, black)
    ledger.add_tx("tx-white")
    ledger.add_tx("tx-black")
    engine.verify_payment(code, "tx-white", white)
    engine.verify_payment(code, "tx-black", black)
    return engine.registry.get(code)
