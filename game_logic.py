from typing import List, Optional, Tuple
from enum import Enum
import logging

logger = logging.getLogger(__name__)

MIN_GRID_SIZE = 5
MAX_GRID_SIZE = 25
WINNING_STREAK = 5

# Reason codes carried by INVALID_MOVE
REASON_NOT_YOUR_TURN = "NOT_YOUR_TURN"
REASON_GAME_NOT_ACTIVE = "GAME_NOT_ACTIVE"
REASON_OUT_OF_BOUNDS = "OUT_OF_BOUNDS"
REASON_OCCUPIED = "OCCUPIED"
REASON_MALFORMED = "MALFORMED"


class GameError(Exception):
    pass


class InvalidMoveError(GameError):
    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


class PlayerSymbol(str, Enum):
    X = "X"
    O = "O"

    def opposite(self) -> "PlayerSymbol":
        return PlayerSymbol.O if self is PlayerSymbol.X else PlayerSymbol.X


Cell = Optional[PlayerSymbol]
Board = List[List[Cell]]

# (dx, dy) for horizontal, vertical and the two diagonals
AXES: List[Tuple[int, int]] = [(0, 1), (1, 0), (1, 1), (1, -1)]


def validate_grid_size(size: int) -> int:
    if not MIN_GRID_SIZE <= size <= MAX_GRID_SIZE:
        raise ValueError(f"Grid size must be between {MIN_GRID_SIZE} and {MAX_GRID_SIZE}, got {size}")
    return size


def empty_board(size: int) -> Board:
    return [[None for _ in range(size)] for _ in range(size)]


def copy_board(board: Board) -> Board:
    return [list(row) for row in board]


def in_bounds(board: Board, x: int, y: int) -> bool:
    size = len(board)
    return 0 <= x < size and 0 <= y < size


def count_run(board: Board, x: int, y: int, dx: int, dy: int) -> int:
    """Length of the same-symbol run through (x, y) along one axis."""
    symbol = board[x][y]
    if symbol is None:
        return 0

    count = 1
    for step in (1, -1):
        i, j = x + dx * step, y + dy * step
        while in_bounds(board, i, j) and board[i][j] == symbol:
            count += 1
            i, j = i + dx * step, j + dy * step
    return count


def get_winning_positions(board: Board, x: int, y: int) -> Optional[List[Tuple[int, int]]]:
    """Cells of the first axis run through (x, y) that reaches WINNING_STREAK."""
    if not in_bounds(board, x, y) or board[x][y] is None:
        return None

    symbol = board[x][y]
    for dx, dy in AXES:
        positions = [(x, y)]
        for step in (1, -1):
            i, j = x + dx * step, y + dy * step
            while in_bounds(board, i, j) and board[i][j] == symbol:
                positions.append((i, j))
                i, j = i + dx * step, j + dy * step

        # Overlines (six or more) count as a win too.
        if len(positions) >= WINNING_STREAK:
            return sorted(positions)

    return None


class GameState:
    """Grid, current turn and game-over flag of one match.

    Pure state: no I/O, no locking. The owner serializes access.
    """

    def __init__(self, size: int):
        self.size = validate_grid_size(size)
        self.board: Board = empty_board(self.size)
        self.current_player = PlayerSymbol.X
        self.is_over = False

    def reset(self):
        self.board = empty_board(self.size)
        self.current_player = PlayerSymbol.X
        self.is_over = False

    def validate_move(self, x: int, y: int):
        """Raise InvalidMoveError if the current player may not play (x, y)."""
        if self.is_over:
            raise InvalidMoveError(REASON_GAME_NOT_ACTIVE, "Game is over")
        if not in_bounds(self.board, x, y):
            raise InvalidMoveError(REASON_OUT_OF_BOUNDS, f"({x}, {y}) is outside the {self.size}x{self.size} grid")
        if self.board[x][y] is not None:
            raise InvalidMoveError(REASON_OCCUPIED, "Position already taken")

    def place_symbol(self, x: int, y: int) -> bool:
        try:
            self.validate_move(x, y)
        except InvalidMoveError as e:
            logger.debug(f"Rejected placement at ({x}, {y}): {e.reason}")
            return False

        self.board[x][y] = self.current_player
        return True

    def check_win(self, x: int, y: int) -> bool:
        if not in_bounds(self.board, x, y):
            return False

        for dx, dy in AXES:
            if count_run(self.board, x, y, dx, dy) >= WINNING_STREAK:
                self.is_over = True
                return True
        return False

    def is_board_full(self) -> bool:
        for row in self.board:
            if None in row:
                return False
        self.is_over = True
        return True

    def switch_player(self):
        self.current_player = self.current_player.opposite()

    def snapshot(self) -> Board:
        return copy_board(self.board)
