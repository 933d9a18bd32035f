import threading
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

# --- Enums ---

class RoomStatus(str, Enum):
    WAITING_PLAYERS = "waiting_players"
    WAITING_PAYMENTS = "waiting_payments"
    PLAYING = "playing"
    FINISHED = "finished"

class Color(str, Enum):
    WHITE = "white"
    BLACK = "black"

# --- Basic Primitives ---

class Square(BaseModel):
    """
    Board coordinate. Row 0 is black's back rank, row 7 is white's.
    Bounds are checked by the move validator, not here, so that an
    out-of-range square is reported as a move error.
    """
    row: int
    col: int

class LastMove(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Square = Field(alias="from")
    to: Square

# --- Entities ---

class Player(BaseModel):
    id: int # 0 = creator (white), 1 = joiner (black)
    wallet: Optional[str] = None
    name: str = ""
    color: Color
    paid: bool = False

class Room(BaseModel):
    """
    One wagered match. Mutated in place by the engine; every mutation
    happens while holding `room.lock`.
    """
    code: str
    status: RoomStatus = RoomStatus.WAITING_PLAYERS
    created_at: int

    entry_fee_usd: float
    token_amount: int # Whole tokens each player pays, fixed at creation
    token_price_at_creation: float

    confirmed_payments: int = 0
    payment_txs: List[str] = []

    board: List[List[str]]
    current_turn: Color = Color.WHITE
    last_move: Optional[LastMove] = None
    winner: Optional[int] = None

    white_time_ms: int
    black_time_ms: int
    last_move_time: Optional[int] = None
    finished_at: Optional[int] = None

    players: List[Player] = []

    # Settlement proof
    payout_tx: Optional[str] = None
    payout_amount: Optional[int] = None
    payout_time: Optional[int] = None
    payout_error: Optional[str] = None
    settled: bool = False

    _lock: threading.RLock = PrivateAttr(default_factory=threading.RLock)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def player_by_wallet(self, wallet: str) -> Optional[Player]:
        return next((p for p in self.players if p.wallet == wallet), None)

# --- API Payloads ---

class CreateRoomRequest(BaseModel):
    entry_fee_usd: Optional[float] = None
    creator_wallet: str

class JoinRoomRequest(BaseModel):
    player_wallet: str

class VerifyPaymentRequest(BaseModel):
    room_code: str
    tx_signature: str
    player_wallet: str

    @field_validator('room_code', 'tx_signature', 'player_wallet')
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('Missing required fields')
        return v.strip()

class MoveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    player_id: int
    from_: Square = Field(alias="from")
    to: Square

# --- Responses ---

class PlayerView(BaseModel):
    id: int
    name: str
    color: Color
    paid: bool

class RoomSnapshot(BaseModel):
    """Sanitized room: no wallets of players, no internal bookkeeping."""
    code: str
    status: RoomStatus
    created_at: int
    entry_fee_usd: float
    token_amount: int
    token_price_at_creation: float
    confirmed_payments: int
    board: List[List[str]]
    current_turn: Color
    last_move: Optional[LastMove] = None
    winner: Optional[int] = None
    white_time_ms: int
    black_time_ms: int
    last_move_time: Optional[int] = None
    finished_at: Optional[int] = None
    players: List[PlayerView]

    wallet_address: str # Where players send their stake
    token_symbol: str
    token_decimals: int

    payout_tx: Optional[str] = None
    payout_amount: Optional[int] = None
    payout_time: Optional[int] = None
    payout_error: Optional[str] = None

class RoomEnvelope(BaseModel):
    success: bool = True
    room: RoomSnapshot

class SeatAssignment(BaseModel):
    success: bool = True
    room: RoomSnapshot
    my_player_id: int
    my_color: Color

class PaymentResult(BaseModel):
    success: bool = True
    room: RoomSnapshot
    message: str

class StatePlayer(BaseModel):
    id: int
    wallet: Optional[str] = None
    name: str
    color: Color
    payment_confirmed: bool

class RoomState(BaseModel):
    success: bool = True
    status: RoomStatus
    board: List[List[str]]
    current_turn: Color
    last_move: Optional[LastMove] = None
    winner: Optional[int] = None
    white_time_ms: int
    black_time_ms: int
    token_amount: int
    entry_fee_usd: float
    players: List[StatePlayer]
    payout_tx: Optional[str] = None
    payout_amount: Optional[int] = None
    payout_time: Optional[int] = None
    payout_error: Optional[str] = None

class PaymentSummary(BaseModel):
    success: bool = True
    status: RoomStatus
    confirmed_payments: int
    can_start_game: bool
    token_amount: int
    players: List[PlayerView]

class MoveResult(BaseModel):
    success: bool = True
    board: List[List[str]]
    game_over: bool = False
    winner: Optional[int] = None
    timeout: bool = False
    current_turn: Optional[Color] = None
    last_move: Optional[LastMove] = None
    white_time_ms: Optional[int] = None
    black_time_ms: Optional[int] = None

# --- Lobby / Reconnect ---

class LobbyEntry(BaseModel):
    code: str
    status: RoomStatus
    entry_fee_usd: float
    token_amount: int
    player_count: int
    players: List[PlayerView]
    current_turn: Color
    created_at: int

class ActiveGame(BaseModel):
    code: str
    status: RoomStatus
    my_color: Color
    my_player_id: int
    entry_fee_usd: float
    token_amount: int
    created_at: int
    has_paid: bool
    opponent: str

# --- Match History ---

class MatchParty(BaseModel):
    wallet: str
    name: str

class MatchSummary(BaseModel):
    id: str
    room_code: str
    winner: MatchParty
    loser: MatchParty
    entry_fee_usd: float
    token_amount: int
    prize: int
    timestamp: int

class OpponentRecord(BaseModel):
    wallet: str
    name: str
    wins: int = 0
    losses: int = 0

class ProfileView(BaseModel):
    wallet: str
    username: str
    wins: int = 0
    losses: int = 0
    total_earnings: int = 0
    total_lost: int = 0
    joined_at: Optional[int] = None
    win_rate: float = 0.0
    recent_matches: List[MatchSummary] = []
    opponents: List[OpponentRecord] = []

class LeaderboardEntry(BaseModel):
    wallet: str
    username: str
    wins: int
    losses: int
    total_earnings: int
    win_rate: float
