"""
Board helpers.
System: 8x8 grid of piece codes, row 0 = black back rank.
Constraint: uppercase letters are white pieces, lowercase are black, "" is empty.
"""

from typing import List

from chess_wager.shared.schemas import Color, Square

BOARD_SIZE = 8
EMPTY = ""

INITIAL_BOARD = (
    ("r", "n", "b", "q", "k", "b", "n", "r"),
    ("p", "p", "p", "p", "p", "p", "p", "p"),
    ("", "", "", "", "", "", "", ""),
    ("", "", "", "", "", "", "", ""),
    ("", "", "", "", "", "", "", ""),
    ("", "", "", "", "", "", "", ""),
    ("P", "P", "P", "P", "P", "P", "P", "P"),
    ("R", "N", "B", "Q", "K", "B", "N", "R"),
)

def new_board() -> List[List[str]]:
    """Fresh mutable copy of the standard starting position."""
    return [list(row) for row in INITIAL_BOARD]

def in_bounds(square: Square) -> bool:
    return 0 <= square.row < BOARD_SIZE and 0 <= square.col < BOARD_SIZE

def piece_at(board: List[List[str]], square: Square) -> str:
    return board[square.row][square.col]

def piece_color(piece: str) -> Color:
    return Color.WHITE if piece == piece.upper() else Color.BLACK

def is_king(piece: str) -> bool:
    return piece.lower() == "k"

def opposite(color: Color) -> Color:
    return Color.BLACK if color == Color.WHITE else Color.WHITE
