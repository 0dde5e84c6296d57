import socket
import logging
import re
from typing import Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum
import threading
import time

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
COMMAND_PATTERN = re.compile(r"^[A-Z_]+$")
# Longest accepted line in bytes, newline included
MAX_LINE_LENGTH = 4096
ACCEPT_RETRY_DELAY = 0.5


class Command(str, Enum):
    CONNECT = "CONNECT"
    SERVER_BUSY = "SERVER_BUSY"
    WELCOME = "WELCOME"
    START_GAME = "START_GAME"
    MOVE = "MOVE"
    VALID_MOVE = "VALID_MOVE"
    INVALID_MOVE = "INVALID_MOVE"
    GAME_OVER = "GAME_OVER"
    PLAY_AGAIN_REQUEST = "PLAY_AGAIN_REQUEST"
    PLAY_AGAIN_RESPONSE = "PLAY_AGAIN_RESPONSE"
    RESET_GAME = "RESET_GAME"
    DISCONNECT = "DISCONNECT"


# PLAY_AGAIN_RESPONSE payloads
ACCEPT = "OUI"
DECLINE = "NON"
# Second GAME_OVER field when there is no winner
NO_WINNER = "NULL"


@dataclass
class Message:
    command: str
    fields: List[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.command, Command):
            self.command = self.command.value
        self.fields = [str(f) for f in self.fields]


class NetworkError(Exception):
    pass


class ProtocolError(NetworkError):
    pass


class MessageProtocol:
    @staticmethod
    def encode(message: Message) -> str:
        """Render a message as one protocol line, without the newline"""
        if not COMMAND_PATTERN.match(message.command):
            raise ProtocolError(f"Invalid command: {message.command!r}")
        for value in message.fields:
            if ";" in value or "\n" in value or "\r" in value:
                raise ProtocolError(f"Field {value!r} cannot be encoded")
        if not message.fields:
            return message.command
        return f"{message.command}:{';'.join(message.fields)}"

    @staticmethod
    def decode(line: str) -> Message:
        """Parse one protocol line into a Message"""
        line = line.rstrip("\r\n")
        command, sep, payload = line.partition(":")
        if not COMMAND_PATTERN.match(command):
            raise ProtocolError(f"Invalid message format: {line!r}")
        fields = payload.split(";") if sep else []
        return Message(command=command, fields=fields)

    @staticmethod
    def pack_message(message: Message) -> bytes:
        """Pack a message into bytes for transmission"""
        return (MessageProtocol.encode(message) + "\n").encode(ENCODING)


class LineConnection:
    """A connected socket speaking one message per line."""

    def __init__(self, sock: socket.socket, peer: Optional[str] = None):
        self.socket = sock
        self.peer = peer or _describe_peer(sock)
        self._reader = sock.makefile("rb")
        self._send_lock = threading.Lock()
        self.closed = False

    def send_message(self, message: Message):
        data = MessageProtocol.pack_message(message)
        with self._send_lock:
            try:
                self.socket.sendall(data)
            except OSError as e:
                logger.error(f"Error sending message to {self.peer}: {str(e)}")
                raise NetworkError(f"Failed to send message: {str(e)}")
        logger.debug(f"-> {self.peer}: {data.decode(ENCODING).rstrip()}")

    def read_message(self) -> Optional[Message]:
        """Block for the next message. None means the peer closed the stream.

        Raises ProtocolError for an undecodable or overlong line (the stream
        stays usable) and NetworkError when the transport breaks.
        """
        raw = self._readline()
        if not raw:
            return None
        if len(raw) >= MAX_LINE_LENGTH and not raw.endswith(b"\n"):
            self._discard_rest_of_line()
            raise ProtocolError(f"Line from {self.peer} exceeds {MAX_LINE_LENGTH} bytes")
        try:
            line = raw.decode(ENCODING)
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Line from {self.peer} is not valid {ENCODING}: {str(e)}")
        logger.debug(f"<- {self.peer}: {line.rstrip()}")
        return MessageProtocol.decode(line)

    def _readline(self) -> bytes:
        try:
            return self._reader.readline(MAX_LINE_LENGTH)
        except (OSError, ValueError) as e:
            raise NetworkError(f"Failed to read from {self.peer}: {str(e)}")

    def _discard_rest_of_line(self):
        while True:
            chunk = self._readline()
            if not chunk or chunk.endswith(b"\n"):
                return

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._reader.close()
        self.socket.close()


def _describe_peer(sock: socket.socket) -> str:
    try:
        address = sock.getpeername()
    except OSError:
        return "unknown"
    if isinstance(address, tuple):
        return f"{address[0]}:{address[1]}"
    return str(address) or "local"


class TCPServer:
    def __init__(self, on_connection: Callable[[LineConnection], None],
                 host: str = '0.0.0.0', port: int = 6789):
        self.host = host
        self.port = port
        self.on_connection = on_connection
        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def address(self) -> Tuple[str, int]:
        if self.server_socket is None:
            return self.host, self.port
        return self.server_socket.getsockname()[:2]

    def start(self):
        """Bind and listen; connections are accepted by serve_forever"""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            self.server_socket.bind((self.host, self.port))
            self.server_socket.listen(5)
        except OSError as e:
            self.server_socket.close()
            raise NetworkError(f"Failed to listen on {self.host}:{self.port}: {str(e)}")
        self.running = True
        logger.info(f"Server started on {self.address[0]}:{self.address[1]}")

    def start_in_background(self) -> threading.Thread:
        self.start()
        self._thread = threading.Thread(target=self.serve_forever, name="accept-loop", daemon=True)
        self._thread.start()
        return self._thread

    def serve_forever(self):
        """Accept connections until stop() is called"""
        while self.running:
            try:
                client_socket, _ = self.server_socket.accept()
            except OSError as e:
                if self.running:
                    logger.error(f"Error accepting connection: {str(e)}")
                    time.sleep(ACCEPT_RETRY_DELAY)
                    continue
                break

            connection = LineConnection(client_socket)
            logger.info(f"Incoming connection from {connection.peer}")
            try:
                self.on_connection(connection)
            except Exception:
                logger.exception(f"Connection handler failed for {connection.peer}")
                connection.close()

    def stop(self):
        """Stop the TCP server"""
        self.running = False
        if self.server_socket is not None:
            try:
                self.server_socket.close()
            except OSError:
                pass
        logger.info("Server stopped")


class TCPClient:
    def __init__(self, host: str = '127.0.0.1', port: int = 6789):
        self.host = host
        self.port = port
        self.connection: Optional[LineConnection] = None
        self.running = False
        self.message_handlers: Dict[str, Callable[[List[str]], None]] = {}
        # Called with no arguments when the stream ends without disconnect()
        self.on_connection_lost: Optional[Callable[[], None]] = None
        self.receive_thread: Optional[threading.Thread] = None

    def connect(self):
        """Connect to the server"""
        try:
            sock = socket.create_connection((self.host, self.port))
        except OSError as e:
            raise NetworkError(f"Failed to connect: {str(e)}")
        self.connection = LineConnection(sock, peer=f"{self.host}:{self.port}")
        self.running = True
        self.receive_thread = threading.Thread(target=self._receive_messages, name="receive-loop", daemon=True)
        self.receive_thread.start()
        logger.info(f"Connected to server at {self.host}:{self.port}")

    def disconnect(self):
        """Close the connection; the receive loop exits quietly"""
        self.running = False
        if self.connection is not None:
            self.connection.close()

    def send_message(self, message: Message):
        """Send a message to the server"""
        if self.connection is None or self.connection.closed:
            raise NetworkError("Not connected")
        self.connection.send_message(message)

    def dispatch(self, message: Message):
        handler = self.message_handlers.get(message.command)
        if handler is None:
            logger.warning(f"Unknown message type: {message.command}")
            return
        handler(message.fields)

    def _receive_messages(self):
        """Receive messages from the server"""
        while self.running:
            try:
                message = self.connection.read_message()
            except ProtocolError as e:
                logger.warning(str(e))
                continue
            except NetworkError as e:
                if self.running:
                    logger.error(f"Error receiving message: {str(e)}")
                break
            if message is None:
                break
            self.dispatch(message)

        lost = self.running
        self.disconnect()
        if lost and self.on_connection_lost is not None:
            self.on_connection_lost()
