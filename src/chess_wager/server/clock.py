"""
Dual chess clock, ticked lazily.

There is no timer thread: remaining time is only deducted when something
reads the room (state poll, move attempt, or the optional sweeper). A room
whose side-to-move has run out stays `playing` until the next read.
"""

import time
from typing import Optional

from chess_wager.shared.board import opposite
from chess_wager.shared.schemas import Color, Room, RoomStatus

def now_ms() -> int:
    return int(time.time() * 1000)

def remaining_ms(room: Room, color: Color) -> int:
    return room.white_time_ms if color == Color.WHITE else room.black_time_ms

def _set_remaining(room: Room, color: Color, value: int) -> None:
    if color == Color.WHITE:
        room.white_time_ms = value
    else:
        room.black_time_ms = value

def start(room: Room, now: int) -> None:
    room.last_move_time = now

def tick(room: Room, now: int) -> Optional[int]:
    """
    Charges the side to move for time elapsed since `last_move_time`.
    Returns the winning player id if the side to move has flagged, else None.
    Caller holds room.lock and performs the finish transition.
    """
    if room.status != RoomStatus.PLAYING or room.last_move_time is None:
        return None

    elapsed = max(0, now - room.last_move_time)
    active = room.current_turn
    left = max(0, remaining_ms(room, active) - elapsed)
    _set_remaining(room, active, left)
    room.last_move_time = now

    if left > 0:
        return None
    winner = next((p for p in room.players if p.color == opposite(active)), None)
    return winner.id if winner else None
