"""
Half-move validation.

Only ownership and turn order are enforced. Pieces may move anywhere on the
board; there is no check, castling, en passant or promotion. A game ends when
a king is captured (or on time, see clock.py).
"""

import logging

from chess_wager.server.errors import InvalidRequest
from chess_wager.shared.board import EMPTY, in_bounds, is_king, opposite, piece_at, piece_color
from chess_wager.shared.schemas import LastMove, Room, Square

logger = logging.getLogger(__name__)

def validate_move(room: Room, player_id: int, src: Square, dst: Square) -> None:
    """Raises InvalidRequest on the first failing check."""
    if not in_bounds(src):
        raise InvalidRequest("From position out of bounds")
    if not in_bounds(dst):
        raise InvalidRequest("To position out of bounds")

    if not 0 <= player_id < len(room.players):
        raise InvalidRequest("Invalid player")
    player = room.players[player_id]

    if player.color != room.current_turn:
        raise InvalidRequest("Not your turn")

    piece = piece_at(room.board, src)
    if piece == EMPTY:
        raise InvalidRequest("No piece")
    if piece_color(piece) != player.color:
        raise InvalidRequest("Not your piece")

def apply_move(room: Room, player_id: int, src: Square, dst: Square, now: int) -> bool:
    """
    Validates and plays one half-move. Caller holds room.lock and has already
    ticked the clock. Returns True when the move captured a king; the turn is
    then left as is and the caller finishes the room.
    """
    validate_move(room, player_id, src, dst)

    piece = piece_at(room.board, src)
    captured_king = is_king(piece_at(room.board, dst))

    room.board[dst.row][dst.col] = piece
    room.board[src.row][src.col] = EMPTY
    room.last_move = LastMove(from_=src, to=dst)
    room.last_move_time = now

    logger.info(f"Move: {room.code} {room.current_turn.value} {src.row},{src.col} -> {dst.row},{dst.col}")

    if not captured_king:
        room.current_turn = opposite(room.current_turn)
    return captured_king
