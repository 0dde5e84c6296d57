from dataclasses import dataclass
from typing import List, Optional, Tuple
from enum import Enum

from game_logic import PlayerSymbol, validate_grid_size

DEFAULT_PORT = 6789
DEFAULT_GRID_SIZE = 15
MAX_NAME_LENGTH = 20
# Characters that would corrupt the COMMAND:f1;f2 encoding
FORBIDDEN_NAME_CHARS = (";", ":", "\n", "\r")

HOST_SYMBOL = PlayerSymbol.X
REMOTE_SYMBOL = PlayerSymbol.O


class ServerPhase(Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


class TurnState(Enum):
    """Mirror-side view of whose turn it is.

    PENDING means a MOVE was sent and no confirmation or rejection has
    arrived yet; the board is untouched until VALID_MOVE comes back.
    """
    OPPONENT = "opponent"
    MINE = "mine"
    PENDING = "pending"


class Outcome(Enum):
    VICTORY = "VICTORY"
    DRAW = "DRAW"


def validate_player_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"Player name must be 1 to {MAX_NAME_LENGTH} characters")
    if any(c in name for c in FORBIDDEN_NAME_CHARS):
        raise ValueError("Player name may not contain ';', ':' or line breaks")
    return name


@dataclass
class PlayerIdentity:
    name: str
    symbol: PlayerSymbol


@dataclass
class MatchResult:
    outcome: Outcome
    winner_name: Optional[str] = None
    winner_symbol: Optional[PlayerSymbol] = None
    winning_positions: Optional[List[Tuple[int, int]]] = None

    @property
    def is_draw(self) -> bool:
        return self.outcome is Outcome.DRAW


@dataclass
class GameConfig:
    player_name: str
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    grid_size: int = DEFAULT_GRID_SIZE

    def __post_init__(self):
        self.player_name = validate_player_name(self.player_name)
        validate_grid_size(self.grid_size)
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}")
