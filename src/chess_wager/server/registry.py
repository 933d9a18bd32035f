import logging
import math
import threading
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from chess_wager.server.clock import now_ms
from chess_wager.server.config import Settings
from chess_wager.server.errors import InvalidRequest, RoomNotFound
from chess_wager.server.ledger import MAX_RAW_AMOUNT
from chess_wager.server.oracle import PriceOracle
from chess_wager.server.settlement import compute_payout, to_smallest_unit
from chess_wager.shared.board import new_board
from chess_wager.shared.identity import generate_room_code, is_valid_wallet, normalize_code, short_wallet
from chess_wager.shared.schemas import Color, Player, Room, RoomStatus

logger = logging.getLogger(__name__)

# Lobby ordering
STATUS_ORDER = {
    RoomStatus.PLAYING: 0,
    RoomStatus.WAITING_PAYMENTS: 1,
    RoomStatus.WAITING_PLAYERS: 2,
    RoomStatus.FINISHED: 3,
}

class ReplayGuard:
    """
    Global set of ledger transaction ids already used as proof of payment.
    Ids are reserved while their ledger lookup is in flight so that two
    concurrent requests with the same id cannot both be credited. Committed
    ids are never removed.
    """

    def __init__(self, consumed: Iterable[str] = (), on_commit: Optional[Callable[[str], None]] = None):
        self._lock = threading.Lock()
        self._consumed: Set[str] = set(consumed)
        self._pending: Set[str] = set()
        self._on_commit = on_commit

    def __contains__(self, tx_id: str) -> bool:
        with self._lock:
            return tx_id in self._consumed

    def __len__(self) -> int:
        with self._lock:
            return len(self._consumed)

    def reserve(self, tx_id: str) -> bool:
        """False if the id is consumed or already reserved by another request."""
        with self._lock:
            if tx_id in self._consumed or tx_id in self._pending:
                return False
            self._pending.add(tx_id)
            return True

    def release(self, tx_id: str) -> None:
        with self._lock:
            self._pending.discard(tx_id)

    def commit(self, tx_id: str) -> None:
        """In-memory only. Call `persist` once the room lock is released."""
        with self._lock:
            self._pending.discard(tx_id)
            self._consumed.add(tx_id)

    def persist(self, tx_id: str) -> None:
        if self._on_commit:
            self._on_commit(tx_id)

class MatchRegistry:
    """Owns every live Room, keyed by its upper-case code."""

    def __init__(self, settings: Settings, oracle: PriceOracle,
                 clock: Callable[[], int] = now_ms,
                 code_factory: Callable[[], str] = generate_room_code):
        self.settings = settings
        self.oracle = oracle
        self.clock = clock
        self.code_factory = code_factory
        self._lock = threading.Lock()
        self._rooms: Dict[str, Room] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._rooms)

    def create(self, entry_fee_usd: Optional[float], creator_wallet: str) -> Room:
        if not is_valid_wallet(creator_wallet):
            raise InvalidRequest("Invalid wallet")

        usd_amount = entry_fee_usd if entry_fee_usd and entry_fee_usd > 0 else self.settings.default_entry_fee_usd
        if not math.isfinite(usd_amount):
            raise InvalidRequest("Invalid entry fee")

        price = self.oracle.get_price()
        token_amount = math.floor(usd_amount / price)
        if token_amount < 1:
            raise InvalidRequest("Entry fee is below one token")
        payout_raw = to_smallest_unit(compute_payout(token_amount, self.settings.commission_rate),
                                      self.settings.token_decimals)
        if payout_raw > MAX_RAW_AMOUNT:
            raise InvalidRequest("Entry fee is too large")

        now = self.clock()
        game_time = self.settings.game_time_ms
        with self._lock:
            code = self.code_factory()
            while code in self._rooms:
                logger.warning(f"Room code collision on {code}, regenerating")
                code = self.code_factory()

            room = Room(
                code=code,
                created_at=now,
                entry_fee_usd=usd_amount,
                token_amount=token_amount,
                token_price_at_creation=price,
                board=new_board(),
                white_time_ms=game_time,
                black_time_ms=game_time,
                players=[Player(id=0, wallet=creator_wallet, name=short_wallet(creator_wallet), color=Color.WHITE)],
            )
            self._rooms[code] = room

        logger.info(f"Room created: {code} - {token_amount} {self.settings.token_symbol} (~${usd_amount})")
        return room

    def get(self, code: str) -> Room:
        with self._lock:
            room = self._rooms.get(normalize_code(code))
        if room is None:
            raise RoomNotFound()
        return room

    def rooms(self) -> List[Room]:
        with self._lock:
            return list(self._rooms.values())

    def expire(self, now: Optional[int] = None) -> List[str]:
        """Drops finished rooms past retention and never-joined or never-paid rooms past the idle window."""
        now = self.clock() if now is None else now
        retention_ms = self.settings.finished_retention_seconds * 1000
        idle_ms = self.settings.waiting_idle_seconds * 1000

        removed = []
        for room in self.rooms():
            with room.lock:
                stale_finished = (room.status == RoomStatus.FINISHED and room.finished_at is not None
                                  and now - room.finished_at > retention_ms)
                never_paid = (room.status == RoomStatus.WAITING_PLAYERS
                              or (room.status == RoomStatus.WAITING_PAYMENTS and room.confirmed_payments == 0))
                stale_waiting = never_paid and now - room.created_at > idle_ms
                if not (stale_finished or stale_waiting):
                    continue
                with self._lock:
                    self._rooms.pop(room.code, None)
            removed.append(room.code)
            logger.info(f"Cleaned up {'room' if stale_finished else 'stale room'}: {room.code}")
        return removed

    def find_active_for_wallet(self, wallet: str) -> Optional[Tuple[Room, Player]]:
        """First unfinished room the wallet sits in (for reconnecting)."""
        for room in self.rooms():
            if room.status == RoomStatus.FINISHED:
                continue
            player = room.player_by_wallet(wallet)
            if player:
                return room, player
        return None

    def lobby(self) -> List[Room]:
        """Rooms whose creator has paid, plus games in progress."""
        listed = [
            r for r in self.rooms()
            if r.status == RoomStatus.PLAYING or (r.players and r.players[0].paid)
        ]
        listed.sort(key=lambda r: STATUS_ORDER.get(r.status, 99))
        return listed

    def stats(self) -> dict:
        rooms = self.rooms()
        active = [r for r in rooms if r.status != RoomStatus.FINISHED]
        return {
            "rooms": len(rooms),
            "active_rooms": len(active),
            "live_games": len([r for r in active if r.status == RoomStatus.PLAYING]),
        }
