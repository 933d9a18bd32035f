import logging
from concurrent.futures import Executor, Future
from typing import Callable, List, Optional

from chess_wager.server import clock, moves
from chess_wager.server.clock import now_ms
from chess_wager.server.config import Settings
from chess_wager.server.errors import InvalidRequest, LedgerUnavailable
from chess_wager.server.ledger import LedgerClient, LedgerError, LedgerTransaction
from chess_wager.server.registry import MatchRegistry, ReplayGuard
from chess_wager.server.settlement import SettlementEngine, to_smallest_unit
from chess_wager.shared.identity import is_valid_wallet, short_wallet
from chess_wager.shared.schemas import (
    ActiveGame, Color, LobbyEntry, MoveResult, PaymentResult, PaymentSummary,
    Player, PlayerView, Room, RoomEnvelope, RoomSnapshot, RoomState, RoomStatus,
    SeatAssignment, Square, StatePlayer
)

logger = logging.getLogger(__name__)

class RoomEngine:
    """
    Room lifecycle: waiting_players -> waiting_payments -> playing -> finished.

    Every check-then-mutate on a room runs under `room.lock`. Ledger calls
    never hold the lock: payment verification re-validates after the call
    returns. The transition into `finished` happens in `_finish` only, and
    settlement is dispatched solely by the caller whose `_finish` succeeded.
    """

    def __init__(self, registry: MatchRegistry, ledger: LedgerClient,
                 settlement: SettlementEngine, settings: Settings,
                 replay_guard: Optional[ReplayGuard] = None,
                 platform_wallet: str = "",
                 clock_fn: Callable[[], int] = now_ms,
                 executor: Optional[Executor] = None):
        self.registry = registry
        self.ledger = ledger
        self.settlement = settlement
        self.settings = settings
        self.replay_guard = replay_guard or ReplayGuard()
        self.platform_wallet = platform_wallet or ledger.signer_address or settings.wallet_address
        self.clock = clock_fn
        # None runs settlement inline on the calling thread
        self.executor = executor

    # --- Views ---

    def snapshot(self, room: Room) -> RoomSnapshot:
        with room.lock:
            return RoomSnapshot(
                code=room.code,
                status=room.status,
                created_at=room.created_at,
                entry_fee_usd=room.entry_fee_usd,
                token_amount=room.token_amount,
                token_price_at_creation=room.token_price_at_creation,
                confirmed_payments=room.confirmed_payments,
                board=[list(row) for row in room.board],
                current_turn=room.current_turn,
                last_move=room.last_move,
                winner=room.winner,
                white_time_ms=room.white_time_ms,
                black_time_ms=room.black_time_ms,
                last_move_time=room.last_move_time,
                finished_at=room.finished_at,
                players=[self._player_view(p) for p in room.players],
                wallet_address=self.platform_wallet,
                token_symbol=self.settings.token_symbol,
                token_decimals=self.settings.token_decimals,
                payout_tx=room.payout_tx,
                payout_amount=room.payout_amount,
                payout_time=room.payout_time,
                payout_error=room.payout_error,
            )

    @staticmethod
    def _player_view(player: Player) -> PlayerView:
        return PlayerView(id=player.id, name=player.name, color=player.color, paid=player.paid)

    # --- Create / Join ---

    def create_room(self, entry_fee_usd: Optional[float], creator_wallet: str) -> SeatAssignment:
        room = self.registry.create(entry_fee_usd, creator_wallet)
        return SeatAssignment(room=self.snapshot(room), my_player_id=0, my_color=Color.WHITE)

    def join_room(self, code: str, wallet: str) -> SeatAssignment:
        room = self.registry.get(code)
        with room.lock:
            if room.status == RoomStatus.FINISHED:
                raise InvalidRequest("Game already finished")
            if room.status == RoomStatus.PLAYING:
                raise InvalidRequest("Game already started")
            if len(room.players) >= 2:
                raise InvalidRequest("Room is full")
            if not is_valid_wallet(wallet):
                raise InvalidRequest("Invalid wallet")
            if room.player_by_wallet(wallet):
                raise InvalidRequest("You are already in this room")

            player = Player(id=1, wallet=wallet, name=short_wallet(wallet), color=Color.BLACK)
            room.players.append(player)
            room.status = RoomStatus.WAITING_PAYMENTS
            logger.info(f"Player joined: {room.code} as {player.color.value}")

        return SeatAssignment(room=self.snapshot(room), my_player_id=player.id, my_color=player.color)

    # --- Payments ---

    def verify_payment(self, code: str, tx_id: str, wallet: str) -> PaymentResult:
        if not tx_id or not wallet:
            raise InvalidRequest("Missing required fields")
        if not is_valid_wallet(wallet):
            raise InvalidRequest("Invalid wallet address")

        room = self.registry.get(code)
        with room.lock:
            self._check_payable(room, tx_id, wallet)
            if not self.replay_guard.reserve(tx_id):
                raise InvalidRequest("Transaction already processed")

        try:
            try:
                tx = self.ledger.fetch_transaction(tx_id)
            except LedgerError as e:
                logger.error(f"Ledger lookup failed for {tx_id}: {e}")
                raise LedgerUnavailable("Ledger unavailable, retry with the same transaction") from e

            if not tx.found:
                raise InvalidRequest("TX not found")
            if not tx.succeeded:
                raise InvalidRequest("TX failed")
            if self.settings.strict_payment_verification:
                self._check_deposit(room, tx)

            with room.lock:
                self._check_payable(room, tx_id, wallet)
                player = self._claim_slot(room, wallet)

                player.paid = True
                player.wallet = wallet
                player.name = short_wallet(wallet)
                room.confirmed_payments += 1
                room.payment_txs.append(tx_id)
                self.replay_guard.commit(tx_id)

                if room.confirmed_payments >= 2 and len(room.players) >= 2:
                    room.status = RoomStatus.PLAYING
                    clock.start(room, self.clock())
                logger.info(f"Payment verified: {room.code} - Player {player.id} - "
                            f"{room.token_amount} {self.settings.token_symbol}")
                message = "Game starting!" if room.status == RoomStatus.PLAYING else "Payment confirmed!"
        finally:
            # No-op once committed
            self.replay_guard.release(tx_id)

        self.replay_guard.persist(tx_id)

        return PaymentResult(room=self.snapshot(room), message=message)

    def _check_payable(self, room: Room, tx_id: str, wallet: str) -> None:
        if room.status == RoomStatus.FINISHED:
            raise InvalidRequest("Game already finished")
        if room.status == RoomStatus.PLAYING:
            raise InvalidRequest("Game already started")
        if tx_id in self.replay_guard:
            raise InvalidRequest("Transaction already processed")
        if any(p.wallet == wallet and p.paid for p in room.players):
            raise InvalidRequest("You already paid for this room. Cannot play against yourself!")

    @staticmethod
    def _claim_slot(room: Room, wallet: str) -> Player:
        player = next((p for p in room.players if p.wallet == wallet and not p.paid), None)
        if player is None:
            player = next((p for p in room.players if not p.paid), None)
        if player is None:
            raise InvalidRequest("All paid")
        if any(p.wallet == wallet and p is not player for p in room.players):
            raise InvalidRequest("Cannot play against yourself!")
        return player

    def _check_deposit(self, room: Room, tx: LedgerTransaction) -> None:
        """Strict mode: the tx must credit the platform wallet with the full stake in the wager token."""
        expected = to_smallest_unit(room.token_amount, self.settings.token_decimals)
        credited = tx.credited(self.platform_wallet, self.settings.token_mint)
        if credited <= 0:
            raise InvalidRequest("TX does not pay the platform wallet in the wager token")
        if credited < expected:
            raise InvalidRequest("TX amount is below the room stake")

    def get_payments(self, code: str) -> PaymentSummary:
        room = self.registry.get(code)
        with room.lock:
            return PaymentSummary(
                status=room.status,
                confirmed_payments=room.confirmed_payments,
                can_start_game=room.confirmed_payments >= 2 and len(room.players) >= 2,
                token_amount=room.token_amount,
                players=[self._player_view(p) for p in room.players],
            )

    # --- Reads (tick the clock) ---

    def get_room(self, code: str) -> RoomEnvelope:
        room = self.registry.get(code)
        self.tick(room)
        return RoomEnvelope(room=self.snapshot(room))

    def get_state(self, code: str) -> RoomState:
        room = self.registry.get(code)
        self.tick(room)
        with room.lock:
            return RoomState(
                status=room.status,
                board=[list(row) for row in room.board],
                current_turn=room.current_turn,
                last_move=room.last_move,
                winner=room.winner,
                white_time_ms=room.white_time_ms,
                black_time_ms=room.black_time_ms,
                token_amount=room.token_amount,
                entry_fee_usd=room.entry_fee_usd,
                players=[
                    StatePlayer(id=p.id, wallet=p.wallet, name=p.name, color=p.color, payment_confirmed=p.paid)
                    for p in room.players
                ],
                payout_tx=room.payout_tx,
                payout_amount=room.payout_amount,
                payout_time=room.payout_time,
                payout_error=room.payout_error,
            )

    def tick(self, room: Room) -> bool:
        """Lazy clock tick. True if this call ended the game on time."""
        with room.lock:
            winner = clock.tick(room, self.clock())
            finished = winner is not None and self._finish(room, winner, reason="timeout")
        if finished:
            self._dispatch_settlement(room)
        return finished

    # --- Moves ---

    def submit_move(self, code: str, player_id: int, src: Square, dst: Square) -> MoveResult:
        room = self.registry.get(code)
        with room.lock:
            if room.status != RoomStatus.PLAYING:
                raise InvalidRequest("Game not in progress")
            if room.winner is not None:
                raise InvalidRequest("Game already over")

            now = self.clock()
            flagged = clock.tick(room, now)
            if flagged is not None:
                self._finish(room, flagged, reason="timeout")
                result = MoveResult(board=[list(r) for r in room.board], game_over=True,
                                    winner=room.winner, timeout=True)
            else:
                captured_king = moves.apply_move(room, player_id, src, dst, now)
                if captured_king:
                    self._finish(room, player_id, reason="king captured")
                    result = MoveResult(board=[list(r) for r in room.board], game_over=True,
                                        winner=room.winner, last_move=room.last_move)
                else:
                    result = MoveResult(
                        board=[list(r) for r in room.board],
                        current_turn=room.current_turn,
                        last_move=room.last_move,
                        white_time_ms=room.white_time_ms,
                        black_time_ms=room.black_time_ms,
                    )

        if result.game_over:
            self._dispatch_settlement(room)
        return result

    # --- Termination ---

    def _finish(self, room: Room, winner: int, reason: str) -> bool:
        """One-shot transition into `finished`. Caller holds room.lock."""
        if room.status != RoomStatus.PLAYING or room.winner is not None:
            return False
        room.winner = winner
        room.status = RoomStatus.FINISHED
        room.finished_at = self.clock()
        room.last_move_time = None
        logger.info(f"Winner: player {winner} in {room.code} ({reason})")
        return True

    def _dispatch_settlement(self, room: Room) -> None:
        if self.executor is None:
            self.settlement.settle(room)
            return
        future = self.executor.submit(self.settlement.settle, room)
        future.add_done_callback(lambda f: _log_settlement_failure(room.code, f))

    # --- Housekeeping ---

    def sweep(self) -> List[str]:
        """Periodic job: optional clock sweep of live games, then registry expiry."""
        if self.settings.clock_sweep_enabled:
            for room in self.registry.rooms():
                if room.status == RoomStatus.PLAYING:
                    self.tick(room)
        return self.registry.expire(self.clock())

    def lobby(self) -> List[LobbyEntry]:
        entries = []
        for room in self.registry.lobby():
            with room.lock:
                entries.append(LobbyEntry(
                    code=room.code,
                    status=room.status,
                    entry_fee_usd=room.entry_fee_usd,
                    token_amount=room.token_amount,
                    player_count=len(room.players),
                    players=[self._player_view(p) for p in room.players],
                    current_turn=room.current_turn,
                    created_at=room.created_at,
                ))
        return entries

    def active_game(self, wallet: str) -> Optional[ActiveGame]:
        if not is_valid_wallet(wallet):
            raise InvalidRequest("Invalid wallet")
        found = self.registry.find_active_for_wallet(wallet)
        if found is None:
            return None
        room, player = found
        with room.lock:
            opponent = next((p for p in room.players if p.wallet != wallet), None)
            return ActiveGame(
                code=room.code,
                status=room.status,
                my_color=player.color,
                my_player_id=player.id,
                entry_fee_usd=room.entry_fee_usd,
                token_amount=room.token_amount,
                created_at=room.created_at,
                has_paid=player.paid,
                opponent=opponent.name if opponent else "Waiting...",
            )

def _log_settlement_failure(code: str, future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(f"Settlement crashed for room {code}: {exc}", exc_info=exc)
