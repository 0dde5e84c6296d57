import logging
import threading
from typing import Callable, Dict, List, Optional

from game_logic import (
    GameState, InvalidMoveError, PlayerSymbol, get_winning_positions,
    REASON_GAME_NOT_ACTIVE, REASON_MALFORMED, REASON_NOT_YOUR_TURN,
    REASON_OCCUPIED, REASON_OUT_OF_BOUNDS,
)
from models import (
    GameConfig, MatchResult, Outcome, PlayerIdentity, ServerPhase,
    HOST_SYMBOL, REMOTE_SYMBOL, validate_player_name,
)
from network import (
    Command, LineConnection, Message, NetworkError, ProtocolError, TCPServer,
    ACCEPT, DECLINE, NO_WINNER,
)
from ui import ConsoleView, GameController, GameView

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "N-in-a-row"


class MatchController(GameController):
    """Authoritative side of a match.

    Owns the only GameState of the process. The local player's input and
    the peer worker thread both go through self._lock, so no two
    placements are ever evaluated at the same time. Every state change is
    made before the message announcing it is sent.

    There is no read timeout: a peer that goes silent keeps its worker
    blocked until the socket is closed.
    """

    def __init__(self, config: GameConfig, view: Optional[GameView] = None):
        self.config = config
        self.view = view or ConsoleView()
        self.host = PlayerIdentity(config.player_name, HOST_SYMBOL)
        self.remote: Optional[PlayerIdentity] = None
        self.game = GameState(config.grid_size)
        self.phase = ServerPhase.WAITING
        self.result: Optional[MatchResult] = None
        # Set once a rematch is declined; cleared by the next connection
        self.match_closed = False
        self.rematch_requested_by: Optional[PlayerSymbol] = None
        self.rematch_prompt_pending = False

        self.server: Optional[TCPServer] = None
        self._connection: Optional[LineConnection] = None
        self._lock = threading.Lock()
        self._handlers: Dict[str, Callable[[List[str]], None]] = {
            Command.MOVE.value: self._handle_remote_move,
            Command.PLAY_AGAIN_REQUEST.value: self._handle_play_again_request,
            Command.PLAY_AGAIN_RESPONSE.value: self._handle_play_again_response,
            Command.CONNECT.value: self._handle_duplicate_connect,
        }

    @property
    def game_started(self) -> bool:
        return self.phase is not ServerPhase.WAITING and self.remote is not None

    def start(self):
        """Listen for a peer in the background"""
        self.server = TCPServer(self.accept, host=self.config.host, port=self.config.port)
        self.server.start_in_background()
        host, port = self.server.address
        self.view.set_title(DEFAULT_TITLE)
        self.view.update_board(self.game.snapshot())
        self.view.set_status_message(f"Waiting for an opponent on {host}:{port}...")

    def stop(self):
        if self.server is not None:
            self.server.stop()
        with self._lock:
            connection = self._connection
        if connection is not None:
            connection.close()

    def accept(self, connection: LineConnection) -> bool:
        """Admit a new connection and start its worker, or refuse it"""
        if not self.admit(connection):
            return False
        worker = threading.Thread(
            target=self.serve_peer, args=(connection,),
            name=f"peer-{connection.peer}", daemon=True
        )
        worker.start()
        return True

    def admit(self, connection: LineConnection) -> bool:
        with self._lock:
            if self.phase is not ServerPhase.WAITING:
                logger.info(f"Refusing {connection.peer}: a match is already active ({self.phase.value})")
                busy = True
            else:
                self.phase = ServerPhase.PLAYING
                self._connection = connection
                busy = False

        if busy:
            try:
                connection.send_message(Message(Command.SERVER_BUSY))
            except NetworkError:
                pass
            connection.close()
            return False

        logger.info(f"Accepted connection from {connection.peer}")
        return True

    def serve_peer(self, connection: LineConnection):
        """Worker body: handshake, then read until the peer goes away"""
        if not self.greet(connection):
            return

        while True:
            try:
                message = connection.read_message()
            except ProtocolError as e:
                logger.warning(f"Ignoring line from {connection.peer}: {str(e)}")
                continue
            except NetworkError as e:
                logger.info(f"Connection to {connection.peer} broke: {str(e)}")
                self.handle_disconnect(connection, graceful=False)
                return

            if message is None:
                self.handle_disconnect(connection, graceful=False)
                return
            if message.command == Command.DISCONNECT:
                self.handle_disconnect(connection, graceful=True)
                return
            self.handle_remote_message(message)

    def greet(self, connection: LineConnection) -> bool:
        """Read CONNECT:<name>, then announce WELCOME and START_GAME"""
        try:
            message = connection.read_message()
            if message is None:
                raise NetworkError("closed before CONNECT")
            if message.command != Command.CONNECT or len(message.fields) != 1:
                raise ProtocolError(f"expected CONNECT, got {message.command}")
            name = validate_player_name(message.fields[0])
        except (NetworkError, ValueError) as e:
            logger.warning(f"Handshake with {connection.peer} failed: {str(e)}")
            self._release(connection)
            return False

        with self._lock:
            if self._connection is not connection:
                return False
            self.remote = PlayerIdentity(name, REMOTE_SYMBOL)
            self.match_closed = False
            self._clear_rematch()
            self.game.reset()
            self.result = None

            self._send(Message(Command.WELCOME, [REMOTE_SYMBOL.value]))
            self._send(Message(Command.START_GAME, [
                self.host.name, name, self.game.current_player.value, self.game.size
            ]))
            logger.info(f"Match started: {self.host.name} (X) vs {name} (O) on a {self.game.size}x{self.game.size} grid")

            self.view.update_board(self.game.snapshot())
            self.view.hide_end_game_options()
            self.view.set_title(self._title())
            self.view.set_status_message("Game started! Your turn.")
        return True

    def handle_remote_message(self, message: Message):
        handler = self._handlers.get(message.command)
        if handler is None:
            logger.warning(f"Unknown message type: {message.command}")
            return
        handler(message.fields)

    def handle_disconnect(self, connection: LineConnection, graceful: bool):
        """Return to Waiting so a brand-new peer can join"""
        with self._lock:
            if self._connection is not connection:
                connection.close()
                return

            name = self.remote.name if self.remote else connection.peer
            was_playing = self.phase is ServerPhase.PLAYING and self.remote is not None
            logger.info(f"{name} disconnected ({'graceful' if graceful else 'connection lost'})")

            self._connection = None
            self.remote = None
            self.game.reset()
            self.phase = ServerPhase.WAITING
            self.result = None
            self.match_closed = False
            self._clear_rematch()

            if was_playing:
                if graceful:
                    self.view.show_alert(f"{name} left the game.")
                else:
                    self.view.show_alert(f"Lost the connection to {name}.")
            self.view.update_board(self.game.snapshot())
            self.view.hide_end_game_options()
            self.view.set_title(DEFAULT_TITLE)
            self.view.set_status_message("Waiting for a new opponent...")
        connection.close()

    def _release(self, connection: LineConnection):
        with self._lock:
            if self._connection is connection:
                self._connection = None
                self.remote = None
                self.phase = ServerPhase.WAITING
        connection.close()

    def on_cell_selected(self, x: int, y: int) -> bool:
        """Local (host) player clicked (x, y)"""
        with self._lock:
            try:
                self._apply_move(self.host.symbol, x, y)
            except InvalidMoveError as e:
                logger.debug(f"Local move ({x}, {y}) rejected: {e.reason}")
                if e.reason == REASON_OCCUPIED:
                    self.view.set_status_message("That cell is already taken.")
                elif e.reason == REASON_OUT_OF_BOUNDS:
                    self.view.set_status_message("That cell is outside the grid.")
                return False
        return True

    def _handle_remote_move(self, fields: List[str]):
        try:
            x, y = int(fields[0]), int(fields[1])
        except (IndexError, ValueError):
            logger.warning(f"Malformed MOVE fields: {fields}")
            self._send(Message(Command.INVALID_MOVE, [REASON_MALFORMED]))
            return

        with self._lock:
            try:
                self._apply_move(REMOTE_SYMBOL, x, y)
            except InvalidMoveError as e:
                logger.info(f"Rejected move ({x}, {y}) from {self._remote_name()}: {e.reason}")
                self._send(Message(Command.INVALID_MOVE, [e.reason]))

    def _apply_move(self, symbol: PlayerSymbol, x: int, y: int):
        """Validate, place, broadcast and evaluate one move. Caller holds the lock."""
        if not self.game_started or self.phase is not ServerPhase.PLAYING:
            raise InvalidMoveError(REASON_GAME_NOT_ACTIVE)
        if self.game.current_player is not symbol:
            raise InvalidMoveError(REASON_NOT_YOUR_TURN)
        self.game.validate_move(x, y)
        self.game.place_symbol(x, y)

        logger.info(f"{symbol.value} played ({x}, {y})")
        self._send(Message(Command.VALID_MOVE, [x, y, symbol.value]))
        self.view.update_board(self.game.snapshot())

        if self._check_end_game(x, y):
            return

        self.game.switch_player()
        if self.game.current_player is self.host.symbol:
            self.view.set_status_message("Your turn.")
        else:
            self.view.set_status_message(f"{self._remote_name()}'s turn.")

    def _check_end_game(self, x: int, y: int) -> bool:
        if self.game.check_win(x, y):
            winner = self.host if self.game.current_player is self.host.symbol else self.remote
            self.result = MatchResult(
                Outcome.VICTORY, winner.name, winner.symbol,
                get_winning_positions(self.game.board, x, y)
            )
            self.phase = ServerPhase.FINISHED
            self._send(Message(Command.GAME_OVER, [Outcome.VICTORY.value, winner.name]))
            logger.info(f"Game over: {winner.name} ({winner.symbol.value}) wins")
            text = "You won!" if winner is self.host else f"{winner.name} won!"
        elif self.game.is_board_full():
            self.result = MatchResult(Outcome.DRAW)
            self.phase = ServerPhase.FINISHED
            self._send(Message(Command.GAME_OVER, [Outcome.DRAW.value, NO_WINNER]))
            logger.info("Game over: draw")
            text = "Draw!"
        else:
            return False

        self.view.show_result(f"Game over: {text}", self.result.winning_positions)
        self.view.show_end_game_options()
        return True

    def on_rematch_requested(self):
        with self._lock:
            if not self._can_negotiate():
                logger.debug("Rematch request ignored: no finished match to replay")
                return
            if self.rematch_prompt_pending:
                self._answer_locked(True)
                return
            if self.rematch_requested_by is not None:
                return
            self.rematch_requested_by = self.host.symbol
            self._send(Message(Command.PLAY_AGAIN_REQUEST))
            logger.info("Rematch requested by host")
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
            self._reset_match()
        else:
            self._close_match("You declined the rematch. The match is over.")

    def _handle_play_again_request(self, fields: List[str]):
        with self._lock:
            if not self._can_negotiate():
                logger.warning("Ignoring PLAY_AGAIN_REQUEST outside a finished match")
                return
            if self.rematch_requested_by is self.host.symbol:
                # Both sides asked: that is an agreement.
                self._send(Message(Command.PLAY_AGAIN_RESPONSE, [ACCEPT]))
                self._reset_match()
                return
            if self.rematch_prompt_pending:
                return
            self.rematch_requested_by = REMOTE_SYMBOL
            self.rematch_prompt_pending = True
            logger.info(f"Rematch requested by {self._remote_name()}")
            self.view.set_status_message(f"{self._remote_name()} wants a rematch.")
            self.view.prompt_rematch(self._remote_name())

    def _handle_play_again_response(self, fields: List[str]):
        with self._lock:
            if not self._can_negotiate() or self.rematch_requested_by is not self.host.symbol:
                logger.warning("Ignoring unsolicited PLAY_AGAIN_RESPONSE")
                return
            if fields and fields[0] == ACCEPT:
                self._reset_match()
            else:
                self._close_match(f"{self._remote_name()} declined. The match is over.")

    def _handle_duplicate_connect(self, fields: List[str]):
        logger.warning(f"Ignoring repeated CONNECT from {self._remote_name()}")

    def _can_negotiate(self) -> bool:
        return self.phase is ServerPhase.FINISHED and self.remote is not None and not self.match_closed

    def _reset_match(self):
        self.game.reset()
        self.phase = ServerPhase.PLAYING
        self.result = None
        self._clear_rematch()
        self._send(Message(Command.RESET_GAME))
        logger.info("Rematch accepted: board reset")

        self.view.update_board(self.game.snapshot())
        self.view.hide_end_game_options()
        self.view.set_title(self._title())
        self.view.set_status_message("New game! Your turn.")

    def _close_match(self, text: str):
        self.match_closed = True
        self._clear_rematch()
        logger.info("Rematch declined: match closed")
        self.view.set_status_message(text)

    def _clear_rematch(self):
        self.rematch_requested_by = None
        self.rematch_prompt_pending = False

    def on_close_requested(self):
        with self._lock:
            connection = self._connection
            if connection is not None:
                self._send(Message(Command.DISCONNECT))
        self.stop()

    def _send(self, message: Message):
        connection = self._connection
        if connection is None:
            return
        try:
            connection.send_message(message)
        except NetworkError:
            # The worker's next read fails and runs handle_disconnect.
            pass

    def _remote_name(self) -> str:
        return self.remote.name if self.remote else "opponent"

    def _title(self) -> str:
        return f"{self.host.name} ({self.host.symbol.value}) vs {self._remote_name()} ({REMOTE_SYMBOL.value})"
