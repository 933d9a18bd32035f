"""
Winner payout.

Delivery is at-most-once: a failed submission is written to
`room.payout_error` and left for manual reconciliation, never retried.
"""

import logging
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from chess_wager.server.clock import now_ms
from chess_wager.server.config import Settings
from chess_wager.server.history import MatchHistory
from chess_wager.server.ledger import LedgerClient, LedgerError
from chess_wager.shared.schemas import Room, RoomStatus

logger = logging.getLogger(__name__)

def compute_payout(token_amount: int, commission_rate: float) -> int:
    """floor(2 * stake * (1 - commission)) in whole tokens."""
    pot = Decimal(token_amount) * 2
    share = Decimal(1) - Decimal(str(commission_rate))
    return int((pot * share).to_integral_value(rounding=ROUND_FLOOR))

def to_smallest_unit(amount: int, decimals: int) -> int:
    return int(amount) * 10 ** decimals

class SettlementEngine:
    def __init__(self, ledger: LedgerClient, settings: Settings,
                 history: Optional[MatchHistory] = None,
                 clock: Callable[[], int] = now_ms):
        self.ledger = ledger
        self.settings = settings
        self.history = history
        self.clock = clock

    def settle(self, room: Room) -> Optional[str]:
        """Pays the winner of a finished room. Runs at most once per room."""
        with room.lock:
            if room.status != RoomStatus.FINISHED or room.winner is None or room.settled:
                return None
            room.settled = True
            winner = room.players[room.winner]
            loser = next((p for p in room.players if p.id != room.winner), None)
            token_amount = room.token_amount

        payout = compute_payout(token_amount, self.settings.commission_rate)

        if self.history and winner.wallet and loser and loser.wallet:
            try:
                self.history.record_match(
                    room.code, room.entry_fee_usd, token_amount, payout,
                    winner_wallet=winner.wallet, loser_wallet=loser.wallet,
                )
            except SQLAlchemyError as e:
                logger.error(f"Could not record match {room.code}: {e}")

        if self.ledger.signer_address is None:
            logger.info("No wallet configured for payout")
            return None
        if not winner.wallet:
            return None

        mint = self.settings.token_mint
        try:
            sender = self.ledger.deposit_address(self.ledger.signer_address, mint)
            recipient = self.ledger.deposit_address(winner.wallet, mint)
            signature = self.ledger.submit_transfer(
                sender, recipient, to_smallest_unit(payout, self.settings.token_decimals)
            )
        except Exception as e:
            # `settled` is already set, so every failure is recorded on the room
            logger.error(f"Payout error for room {room.code}: {e}", exc_info=not isinstance(e, LedgerError))
            with room.lock:
                room.payout_error = str(e) or type(e).__name__
            return None

        with room.lock:
            room.payout_tx = signature
            room.payout_amount = payout
            room.payout_time = self.clock()
        logger.info(f"Payout sent: {payout} {self.settings.token_symbol} to {winner.name}, tx: {signature}")
        return signature
