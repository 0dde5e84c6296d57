import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from game_logic import (
    Board, PlayerSymbol, empty_board, copy_board, get_winning_positions, in_bounds,
    validate_grid_size, REASON_MALFORMED, REASON_OCCUPIED, REASON_OUT_OF_BOUNDS,
)
from models import (
    DEFAULT_PORT, MatchResult, Outcome, TurnState, REMOTE_SYMBOL, validate_player_name,
)
from network import Command, Message, NetworkError, TCPClient, ACCEPT, DECLINE
from ui import ConsoleView, GameController, GameView

logger = logging.getLogger(__name__)

# INVALID_MOVE reasons after which it is still this side's turn
RETRYABLE_REASONS = (REASON_OUT_OF_BOUNDS, REASON_OCCUPIED, REASON_MALFORMED)


class RemoteMirror(GameController):
    """Client side of a match.

    Keeps a copy of the board that only changes on events confirmed by the
    host. Sending a MOVE moves the turn to PENDING; the board is updated
    when VALID_MOVE comes back, and INVALID_MOVE hands the turn back.
    """

    def __init__(self, player_name: str, view: Optional[GameView] = None,
                 host: str = '127.0.0.1', port: int = DEFAULT_PORT,
                 client: Optional[TCPClient] = None):
        self.player_name = validate_player_name(player_name)
        self.view = view or ConsoleView()
        self.client = client or TCPClient(host, port)
        self.setup_message_handlers()
        self.client.on_connection_lost = self._handle_connection_lost

        self.symbol: Optional[PlayerSymbol] = None
        self.opponent_name: Optional[str] = None
        self.start_symbol: Optional[PlayerSymbol] = None
        self.board: Optional[Board] = None
        self.turn = TurnState.OPPONENT
        self.pending_move: Optional[Tuple[int, int]] = None
        self.last_move: Optional[Tuple[int, int, PlayerSymbol]] = None
        self.result: Optional[MatchResult] = None
        self.game_started = False
        self.game_over = False
        # Set once a rematch is declined by either side
        self.match_closed = False
        # Set once the session is over (busy server, disconnect, quit)
        self.terminated = False
        self.rematch_requested = False
        self.rematch_prompt_pending = False

        # Serializes inbound events and local input
        self._lock = threading.RLock()

    def setup_message_handlers(self):
        """Set up message handlers for different message types"""
        self.handlers: Dict[str, Callable[[List[str]], None]] = {
            Command.SERVER_BUSY.value: self._handle_server_busy,
            Command.WELCOME.value: self._handle_welcome,
            Command.START_GAME.value: self._handle_start_game,
            Command.VALID_MOVE.value: self._handle_valid_move,
            Command.INVALID_MOVE.value: self._handle_invalid_move,
            Command.GAME_OVER.value: self._handle_game_over,
            Command.PLAY_AGAIN_REQUEST.value: self._handle_play_again_request,
            Command.PLAY_AGAIN_RESPONSE.value: self._handle_play_again_response,
            Command.RESET_GAME.value: self._handle_reset_game,
            Command.DISCONNECT.value: self._handle_disconnect,
        }
        self.client.message_handlers = self.handlers

    @property
    def is_my_turn(self) -> bool:
        return self.turn is TurnState.MINE

    def start(self):
        """Connect to the host and introduce ourselves"""
        self.view.set_status_message(f"Connecting to {self.client.host}:{self.client.port}...")
        self.client.connect()
        self._send(Message(Command.CONNECT, [self.player_name]))

    def handle_message(self, message: Message):
        handler = self.handlers.get(message.command)
        if handler is None:
            logger.warning(f"Unknown message type: {message.command}")
            return
        handler(message.fields)

    def on_cell_selected(self, x: int, y: int) -> bool:
        """Ask the host to play (x, y); nothing is drawn until it confirms"""
        with self._lock:
            if not self.game_started or self.game_over or self.terminated:
                return False
            if self.turn is not TurnState.MINE:
                logger.debug(f"Ignoring click ({x}, {y}): turn is {self.turn.value}")
                return False
            if not in_bounds(self.board, x, y) or self.board[x][y] is not None:
                self.view.set_status_message("That cell is not available.")
                return False

            self.turn = TurnState.PENDING
            self.pending_move = (x, y)
            self._send(Message(Command.MOVE, [x, y]))
            logger.info(f"Requested move ({x}, {y})")
            return True

    def on_rematch_requested(self):
        with self._lock:
            if not self._can_negotiate() or self.rematch_requested:
                return
            if self.rematch_prompt_pending:
                self._answer_locked(True)
                return
            self.rematch_requested = True
            self._send(Message(Command.PLAY_AGAIN_REQUEST))
            self.view.set_status_message("Rematch request sent...")

    def answer_rematch(self, accept: bool):
        with self._lock:
            if not self.rematch_prompt_pending or not self._can_negotiate():
                return
            self._answer_locked(accept)

    def _answer_locked(self, accept: bool):
        self.rematch_prompt_pending = False
        self._send(Message(Command.PLAY_AGAIN_RESPONSE, [ACCEPT if accept else DECLINE]))
        if accept:
            self.view.set_status_message("You accepted. Waiting for the host...")
        else:
            self.match_closed = True
            self.view.set_status_message("You declined the rematch. The match is over.")

    def on_close_requested(self):
        with self._lock:
            if not self.terminated:
                self._send(Message(Command.DISCONNECT))
                self.terminated = True
        self.client.disconnect()

    def _handle_welcome(self, fields: List[str]):
        try:
            symbol = PlayerSymbol(fields[0])
        except (IndexError, ValueError):
            logger.warning(f"Malformed WELCOME fields: {fields}")
            return
        with self._lock:
            self.symbol = symbol
            logger.info(f"Assigned symbol {symbol.value}")

    def _handle_start_game(self, fields: List[str]):
        try:
            host_name, _, start, size = fields
            start_symbol = PlayerSymbol(start)
            size = validate_grid_size(int(size))
        except ValueError as e:
            logger.warning(f"Malformed START_GAME fields {fields}: {str(e)}")
            return

        with self._lock:
            if self.symbol is None:
                logger.warning("START_GAME before WELCOME; assuming the remote symbol")
                self.symbol = REMOTE_SYMBOL
            self.opponent_name = host_name
            self.start_symbol = start_symbol
            self.board = empty_board(size)
            self._begin_round(start_symbol)
            logger.info(f"Game started against {host_name} on a {size}x{size} grid")

            self.view.update_board(copy_board(self.board))
            self.view.set_title(self._title())
            if self.is_my_turn:
                self.view.set_status_message("The game begins! Your turn.")
            else:
                self.view.set_status_message(f"{self.opponent_name}'s turn.")

    def _handle_valid_move(self, fields: List[str]):
        try:
            x, y, mover = int(fields[0]), int(fields[1]), PlayerSymbol(fields[2])
        except (IndexError, ValueError):
            logger.warning(f"Malformed VALID_MOVE fields: {fields}")
            return

        with self._lock:
            if self.board is None or not in_bounds(self.board, x, y):
                logger.warning(f"VALID_MOVE ({x}, {y}) does not fit the local board")
                return
            self.board[x][y] = mover
            self.last_move = (x, y, mover)
            if mover is self.symbol:
                self.pending_move = None
                self.turn = TurnState.OPPONENT
                status = f"{self.opponent_name}'s turn."
            else:
                self.turn = TurnState.MINE
                status = "Your turn."

            self.view.update_board(copy_board(self.board))
            self.view.set_status_message(status)

    def _handle_invalid_move(self, fields: List[str]):
        reason = fields[0] if fields else ""
        with self._lock:
            logger.info(f"Host rejected move {self.pending_move}: {reason}")
            if self.turn is not TurnState.PENDING:
                return
            self.pending_move = None
            if reason in RETRYABLE_REASONS and not self.game_over:
                self.turn = TurnState.MINE
                self.view.set_status_message(f"Move rejected ({reason}). Try again.")
            else:
                self.turn = TurnState.OPPONENT
                self.view.set_status_message(f"Move rejected ({reason}).")

    def _handle_game_over(self, fields: List[str]):
        if not fields:
            logger.warning("Malformed GAME_OVER: no fields")
            return

        with self._lock:
            self.game_over = True
            self.turn = TurnState.OPPONENT
            self.pending_move = None

            if fields[0] == Outcome.VICTORY.value:
                winner_name = fields[1] if len(fields) > 1 else ""
                # The winning move is always the last confirmed one.
                winner_symbol = self.last_move[2] if self.last_move else None
                positions = None
                if self.last_move is not None:
                    positions = get_winning_positions(self.board, self.last_move[0], self.last_move[1])
                self.result = MatchResult(Outcome.VICTORY, winner_name, winner_symbol, positions)
                text = "You won!" if winner_symbol is self.symbol else f"{winner_name} won!"
            else:
                self.result = MatchResult(Outcome.DRAW)
                positions = None
                text = "Draw!"

            logger.info(f"Game over: {text}")
            self.view.show_result(f"Game over: {text}", positions)
            self.view.show_end_game_options()

    def _handle_play_again_request(self, fields: List[str]):
        with self._lock:
            if not self._can_negotiate():
                logger.warning("Ignoring PLAY_AGAIN_REQUEST outside a finished match")
                return
            if self.rematch_requested:
                # Crossed requests: the host treats ours as the answer.
                return
            self.rematch_prompt_pending = True
            self.view.set_status_message(f"{self.opponent_name} wants a rematch.")
            self.view.prompt_rematch(self.opponent_name)

    def _handle_play_again_response(self, fields: List[str]):
        with self._lock:
            if not self.rematch_requested:
                logger.debug("Ignoring PLAY_AGAIN_RESPONSE to a request we did not make")
                return
            self.rematch_requested = False
            if fields and fields[0] == ACCEPT:
                self.view.set_status_message(f"{self.opponent_name} accepted. Starting a new game...")
            else:
                self.match_closed = True
                self.view.set_status_message(f"{self.opponent_name} declined. The match is over.")

    def _handle_reset_game(self, fields: List[str]):
        with self._lock:
            if self.board is None:
                logger.warning("RESET_GAME before START_GAME")
                return
            self.board = empty_board(len(self.board))
            # X always opens, including after a rematch.
            self._begin_round(PlayerSymbol.X)
            logger.info("Board reset for a rematch")

            self.view.update_board(copy_board(self.board))
            self.view.hide_end_game_options()
            self.view.set_title(self._title())
            if self.is_my_turn:
                self.view.set_status_message("New game! Your turn.")
            else:
                self.view.set_status_message(f"New game! {self.opponent_name}'s turn.")

    def _handle_server_busy(self, fields: List[str]):
        with self._lock:
            self.terminated = True
            self.game_over = True
            self.turn = TurnState.OPPONENT
            logger.info("Host is busy with another match")
            self.view.show_alert("The server is busy. Try again later.")
        self.client.disconnect()

    def _handle_disconnect(self, fields: List[str]):
        self._end_session("The opponent left the game.")

    def _handle_connection_lost(self):
        self._end_session("Lost the connection to the host.")

    def _end_session(self, text: str):
        with self._lock:
            if self.terminated:
                return
            was_over = self.game_over
            self.terminated = True
            self.game_over = True
            self.turn = TurnState.OPPONENT
            self.pending_move = None
            self.rematch_requested = False
            self.rematch_prompt_pending = False
            logger.info(text)

            self.view.set_title("Opponent disconnected")
            if not was_over:
                self.view.show_alert(text)
            else:
                self.view.set_status_message(text)
            self.view.show_end_game_options()
        self.client.disconnect()

    def _begin_round(self, opener: PlayerSymbol):
        self.turn = TurnState.MINE if self.symbol is opener else TurnState.OPPONENT
        self.pending_move = None
        self.last_move = None
        self.result = None
        self.game_started = True
        self.game_over = False
        self.match_closed = False
        self.rematch_requested = False
        self.rematch_prompt_pending = False

    def _can_negotiate(self) -> bool:
        return self.game_over and self.game_started and not self.match_closed and not self.terminated

    def _send(self, message: Message):
        try:
            self.client.send_message(message)
        except NetworkError as e:
            logger.error(f"Failed to send {message.command}: {str(e)}")

    def _title(self) -> str:
        mine = self.symbol.value if self.symbol else "?"
        theirs = self.symbol.opposite().value if self.symbol else "?"
        return f"{self.player_name} ({mine}) vs {self.opponent_name} ({theirs})"
