import socket
import threading

import pytest

from game_logic import PlayerSymbol
from models import GameConfig, Outcome, ServerPhase
from network import LineConnection, MessageProtocol
from server import MatchController

X, O = PlayerSymbol.X, PlayerSymbol.O


@pytest.fixture
def controller(view):
    return MatchController(GameConfig("Alice", grid_size=5), view)


@pytest.fixture
def peer(controller, make_connection):
    """A remote player named Bob who has completed the handshake."""
    connection = make_connection(["CONNECT:Bob"])
    assert controller.admit(connection)
    assert controller.greet(connection)
    return connection


def remote(controller, line):
    controller.handle_remote_message(MessageProtocol.decode(line))


def play_host_win(controller):
    for y in range(4):
        assert controller.on_cell_selected(0, y)
        remote(controller, f"MOVE:1;{y}")
    assert controller.on_cell_selected(0, 4)


def test_starts_waiting(controller):
    assert controller.phase is ServerPhase.WAITING
    assert controller.remote is None
    assert not controller.on_cell_selected(0, 0)


def test_handshake_sends_welcome_then_start_game(controller, peer, view):
    assert peer.sent == ["WELCOME:O", "START_GAME:Alice;Bob;X;5"]
    assert controller.phase is ServerPhase.PLAYING
    assert controller.remote.name == "Bob"
    assert controller.remote.symbol is O
    assert "Bob" in view.title


def test_host_moves_first_and_turns_alternate(controller, peer):
    remote(controller, "MOVE:2;2")
    assert peer.sent[-1] == "INVALID_MOVE:NOT_YOUR_TURN"
    assert controller.game.board[2][2] is None

    assert controller.on_cell_selected(2, 2)
    assert peer.sent[-1] == "VALID_MOVE:2;2;X"
    assert not controller.on_cell_selected(3, 3)

    remote(controller, "MOVE:3;3")
    assert peer.sent[-1] == "VALID_MOVE:3;3;O"
    assert controller.game.board[3][3] is O
    assert controller.game.current_player is X


@pytest.mark.parametrize("line, reason", [
    ("MOVE:0;0", "OCCUPIED"),
    ("MOVE:9;0", "OUT_OF_BOUNDS"),
    ("MOVE:a;b", "MALFORMED"),
    ("MOVE:1", "MALFORMED"),
])
def test_rejected_remote_moves_are_reported(controller, peer, line, reason):
    controller.on_cell_selected(0, 0)
    before = controller.game.snapshot()

    remote(controller, line)

    assert peer.sent[-1] == f"INVALID_MOVE:{reason}"
    assert controller.game.snapshot() == before
    assert controller.game.current_player is O


def test_local_click_on_taken_cell_keeps_turn(controller, peer, view):
    controller.on_cell_selected(0, 0)
    remote(controller, "MOVE:1;1")
    sent = list(peer.sent)

    assert not controller.on_cell_selected(1, 1)
    assert peer.sent == sent
    assert controller.game.current_player is X
    assert "taken" in view.status


def test_host_victory_scenario(controller, peer, view):
    for y in range(4):
        controller.on_cell_selected(0, y)
        if y < 3:
            remote(controller, f"MOVE:1;{y}")
    remote(controller, "MOVE:3;3")
    controller.on_cell_selected(0, 4)

    assert controller.game.is_over
    assert controller.phase is ServerPhase.FINISHED
    assert peer.sent[-2:] == ["VALID_MOVE:0;4;X", "GAME_OVER:VICTORY;Alice"]
    assert controller.result.outcome is Outcome.VICTORY
    assert controller.result.winner_symbol is X
    assert controller.result.winning_positions == [(0, y) for y in range(5)]
    assert view.results == ["Game over: You won!"]
    assert view.end_options_visible


def test_remote_victory_names_the_peer(controller, peer, view):
    for y in range(4):
        controller.on_cell_selected(4, y)
        remote(controller, f"MOVE:{y};4")
    controller.on_cell_selected(2, 2)
    remote(controller, "MOVE:4;4")

    assert peer.sent[-1] == "GAME_OVER:VICTORY;Bob"
    assert view.results == ["Game over: Bob won!"]


def test_full_board_without_line_is_a_draw(controller, peer):
    pattern = [
        "XXOOX",
        "OOXXO",
        "XXOOX",
        "OOXXO",
        "XXOOX",
    ]
    xs = [(r, c) for r, row in enumerate(pattern) for c, s in enumerate(row) if s == "X"]
    os_ = [(r, c) for r, row in enumerate(pattern) for c, s in enumerate(row) if s == "O"]
    assert len(xs) == 13 and len(os_) == 12

    for i, (x, y) in enumerate(xs):
        assert controller.on_cell_selected(x, y)
        if i < len(os_):
            ox, oy = os_[i]
            remote(controller, f"MOVE:{ox};{oy}")

    assert peer.sent[-1] == "GAME_OVER:DRAW;NULL"
    assert controller.phase is ServerPhase.FINISHED
    assert controller.result.is_draw
    assert controller.game.is_over


def test_no_moves_after_game_over(controller, peer):
    play_host_win(controller)
    remote(controller, "MOVE:4;4")
    assert peer.sent[-1] == "INVALID_MOVE:GAME_NOT_ACTIVE"
    assert controller.game.board[4][4] is None


def test_second_connection_is_refused_while_playing(controller, peer, make_connection):
    controller.on_cell_selected(2, 2)
    before = controller.game.snapshot()

    intruder = make_connection(["CONNECT:Mallory"])
    assert not controller.admit(intruder)

    assert intruder.sent == ["SERVER_BUSY"]
    assert intruder.closed
    assert controller.phase is ServerPhase.PLAYING
    assert controller.remote.name == "Bob"
    assert controller.game.snapshot() == before
    assert not peer.closed


def test_second_connection_is_refused_while_finished(controller, peer, make_connection):
    play_host_win(controller)
    intruder = make_connection()
    assert not controller.admit(intruder)
    assert intruder.sent == ["SERVER_BUSY"]
    assert controller.phase is ServerPhase.FINISHED


def test_remote_rematch_request_accepted(controller, peer, view):
    play_host_win(controller)
    remote(controller, "PLAY_AGAIN_REQUEST")
    assert view.prompts == ["Bob"]
    assert controller.phase is ServerPhase.FINISHED

    controller.answer_rematch(True)

    assert peer.sent[-2:] == ["PLAY_AGAIN_RESPONSE:OUI", "RESET_GAME"]
    assert controller.phase is ServerPhase.PLAYING
    assert controller.game.current_player is X
    assert not controller.game.is_over
    assert all(cell is None for row in controller.game.board for cell in row)
    assert not view.end_options_visible


def test_remote_rematch_request_declined_is_terminal(controller, peer):
    play_host_win(controller)
    remote(controller, "PLAY_AGAIN_REQUEST")
    controller.answer_rematch(False)

    assert peer.sent[-1] == "PLAY_AGAIN_RESPONSE:NON"
    assert controller.phase is ServerPhase.FINISHED
    assert controller.match_closed

    sent = list(peer.sent)
    remote(controller, "PLAY_AGAIN_REQUEST")
    controller.on_rematch_requested()
    assert peer.sent == sent


def test_host_rematch_request(controller, peer):
    play_host_win(controller)
    controller.on_rematch_requested()
    assert peer.sent[-1] == "PLAY_AGAIN_REQUEST"

    controller.on_rematch_requested()
    assert peer.sent.count("PLAY_AGAIN_REQUEST") == 1

    remote(controller, "PLAY_AGAIN_RESPONSE:OUI")
    assert peer.sent[-1] == "RESET_GAME"
    assert controller.phase is ServerPhase.PLAYING


def test_host_rematch_request_declined(controller, peer, view):
    play_host_win(controller)
    controller.on_rematch_requested()
    remote(controller, "PLAY_AGAIN_RESPONSE:NON")
    assert controller.phase is ServerPhase.FINISHED
    assert controller.match_closed
    assert "declined" in view.status


def test_crossed_rematch_requests_agree(controller, peer):
    play_host_win(controller)
    controller.on_rematch_requested()
    remote(controller, "PLAY_AGAIN_REQUEST")
    assert peer.sent[-2:] == ["PLAY_AGAIN_RESPONSE:OUI", "RESET_GAME"]
    assert controller.phase is ServerPhase.PLAYING


def test_rematch_messages_ignored_while_playing(controller, peer, view):
    sent = list(peer.sent)
    remote(controller, "PLAY_AGAIN_REQUEST")
    remote(controller, "PLAY_AGAIN_RESPONSE:OUI")
    controller.on_rematch_requested()
    assert peer.sent == sent
    assert view.prompts == []


def test_rematch_after_win_starts_with_x_again(controller, peer):
    for y in range(4):
        controller.on_cell_selected(4, y)
        remote(controller, f"MOVE:{y};4")
    controller.on_cell_selected(2, 2)
    remote(controller, "MOVE:4;4")
    assert controller.result.winner_symbol is O

    remote(controller, "PLAY_AGAIN_REQUEST")
    controller.answer_rematch(True)
    assert controller.game.current_player is X
    assert controller.on_cell_selected(0, 0)


def test_graceful_disconnect_returns_to_waiting(controller, make_connection, view):
    connection = make_connection(["CONNECT:Bob", "MOVE:0;0", "garbage", "FOO:1", "DISCONNECT"])
    assert controller.admit(connection)

    controller.serve_peer(connection)

    assert "INVALID_MOVE:NOT_YOUR_TURN" in connection.sent
    assert controller.phase is ServerPhase.WAITING
    assert controller.remote is None
    assert connection.closed
    assert view.alerts == ["Bob left the game."]


def test_disconnect_mid_match_resets_and_accepts_a_new_peer(controller, make_connection, wait_for):
    connection = make_connection(["CONNECT:Bob"])
    assert controller.admit(connection)
    worker = threading.Thread(target=controller.serve_peer, args=(connection,))
    worker.start()
    wait_for(lambda: controller.remote is not None)

    controller.on_cell_selected(0, 0)
    connection.feed("MOVE:1;1")
    wait_for(lambda: controller.game.board[1][1] is O)
    connection.feed(None)
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert controller.phase is ServerPhase.WAITING
    assert controller.remote is None
    assert all(cell is None for row in controller.game.board for cell in row)
    assert controller.game.current_player is X

    newcomer = make_connection(["CONNECT:Carol"])
    assert controller.admit(newcomer)
    assert controller.greet(newcomer)
    assert newcomer.sent == ["WELCOME:O", "START_GAME:Alice;Carol;X;5"]
    assert controller.phase is ServerPhase.PLAYING


def test_disconnect_while_finished_returns_to_waiting(controller, peer, view):
    play_host_win(controller)
    controller.handle_disconnect(peer, graceful=True)
    assert controller.phase is ServerPhase.WAITING
    assert controller.result is None
    assert view.alerts == []
    assert not view.end_options_visible


def test_stale_disconnect_is_ignored(controller, peer, make_connection):
    old = make_connection()
    controller.handle_disconnect(old, graceful=False)
    assert controller.phase is ServerPhase.PLAYING
    assert controller.remote.name == "Bob"


@pytest.mark.parametrize("script", [
    ["MOVE:1;1"],
    ["CONNECT:"],
    ["CONNECT:a;b"],
    [None],
])
def test_failed_handshake_returns_to_waiting(controller, make_connection, script):
    connection = make_connection(script)
    assert controller.admit(connection)
    assert not controller.greet(connection)
    assert controller.phase is ServerPhase.WAITING
    assert connection.closed


def test_close_request_notifies_peer(controller, peer):
    controller.on_close_requested()
    assert peer.sent[-1] == "DISCONNECT"
    assert peer.closed


def test_invalid_utf8_mid_match_keeps_the_peer(controller, wait_for):
    left, right = socket.socketpair()
    connection = LineConnection(right)
    assert controller.admit(connection)
    left.sendall(b"CONNECT:Bob\n")
    worker = threading.Thread(target=controller.serve_peer, args=(connection,))
    worker.start()
    try:
        wait_for(lambda: controller.remote is not None)
        assert controller.on_cell_selected(0, 0)

        left.sendall(b"\xc3\x28\nMOVE:1;1\n")
        wait_for(lambda: controller.game.board[1][1] is O)

        assert controller.phase is ServerPhase.PLAYING
        assert controller.remote.name == "Bob"
    finally:
        left.sendall(b"DISCONNECT\n")
        worker.join(timeout=5)
        left.close()
    assert controller.phase is ServerPhase.WAITING
