import queue
import time
from typing import List

import pytest

from game_logic import Board
from network import Message, MessageProtocol, NetworkError
from ui import GameView


class RecordingView(GameView):
    def __init__(self):
        self.calls: List[tuple] = []
        self.board: Board = []
        self.status = ""
        self.title = ""
        self.end_options_visible = False
        self.prompts: List[str] = []
        self.results: List[str] = []
        self.alerts: List[str] = []

    def update_board(self, board):
        self.calls.append(("update_board",))
        self.board = board

    def set_status_message(self, text):
        self.calls.append(("set_status_message", text))
        self.status = text

    def set_title(self, text):
        self.calls.append(("set_title", text))
        self.title = text

    def show_end_game_options(self):
        self.end_options_visible = True

    def hide_end_game_options(self):
        self.end_options_visible = False

    def prompt_rematch(self, opponent_name):
        self.prompts.append(opponent_name)

    def show_result(self, text, winning_positions=None):
        self.results.append(text)
        self.winning_positions = winning_positions

    def show_alert(self, text):
        self.alerts.append(text)


class FakeConnection:
    """Scripted stand-in for LineConnection. None in the script means EOF."""

    def __init__(self, incoming=(), peer="peer"):
        self.peer = peer
        self.incoming = queue.Queue()
        self.sent: List[str] = []
        self.closed = False
        for line in incoming:
            self.feed(line)

    def feed(self, line):
        self.incoming.put(line)

    def send_message(self, message: Message):
        if self.closed:
            raise NetworkError("closed")
        self.sent.append(MessageProtocol.encode(message))

    def read_message(self):
        item = self.incoming.get(timeout=5)
        if item is None:
            return None
        if isinstance(item, Exception):
            raise item
        return MessageProtocol.decode(item)

    def close(self):
        self.closed = True


class FakeClient:
    def __init__(self):
        self.host = "127.0.0.1"
        self.port = 6789
        self.sent: List[str] = []
        self.message_handlers = {}
        self.on_connection_lost = None
        self.connected = False
        self.disconnected = False

    def connect(self):
        self.connected = True

    def send_message(self, message: Message):
        self.sent.append(MessageProtocol.encode(message))

    def disconnect(self):
        self.disconnected = True


@pytest.fixture
def view():
    return RecordingView()


@pytest.fixture
def make_view():
    return RecordingView


@pytest.fixture
def make_connection():
    return FakeConnection


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def wait_for():
    def wait(predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            time.sleep(0.01)
        raise AssertionError("condition not met in time")
    return wait
