"""
Launcher for a networked N-in-a-row match.

    python main.py host --name Alice --size 15
    python main.py join --name Bob --server 192.168.1.20

The host listens on a TCP port and plays X; the joining side plays O.
Without --headless a tkinter window is opened, otherwise the board is
printed to the terminal and moves are typed as "<row> <col>".
"""

import argparse
import logging
import sys

from client import RemoteMirror
from game_logic import MIN_GRID_SIZE, MAX_GRID_SIZE
from models import DEFAULT_GRID_SIZE, DEFAULT_PORT, GameConfig
from network import NetworkError
from server import MatchController
from ui import ConsoleView

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Play N-in-a-row over the network")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log protocol traffic")
    subparsers = parser.add_subparsers(dest="role", required=True)

    host = subparsers.add_parser("host", help="Host a match (you play X and move first)")
    host.add_argument("--name", required=True, help="Your display name")
    host.add_argument("--size", type=int, default=DEFAULT_GRID_SIZE,
                      help=f"Grid size, {MIN_GRID_SIZE} to {MAX_GRID_SIZE} (default: {DEFAULT_GRID_SIZE})")
    host.add_argument("--bind", default="0.0.0.0", help="Address to listen on")
    host.add_argument("--port", type=int, default=DEFAULT_PORT)
    host.add_argument("--headless", action="store_true", help="Play in the terminal")

    join = subparsers.add_parser("join", help="Join a hosted match (you play O)")
    join.add_argument("--name", required=True, help="Your display name")
    join.add_argument("--server", default="127.0.0.1", help="Host address")
    join.add_argument("--port", type=int, default=DEFAULT_PORT)
    join.add_argument("--headless", action="store_true", help="Play in the terminal")
    return parser


def make_view(headless: bool):
    if headless:
        return ConsoleView()
    import tkinter as tk
    from ui import TkGameView
    return TkGameView(tk.Tk())


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        if args.role == "host":
            config = GameConfig(args.name, host=args.bind, port=args.port, grid_size=args.size)
            view = make_view(args.headless)
            controller = MatchController(config, view)
        else:
            config = GameConfig(args.name, host=args.server, port=args.port)
            view = make_view(args.headless)
            controller = RemoteMirror(config.player_name, view, host=config.host, port=config.port)
    except ValueError as e:
        logger.error(str(e))
        return 2

    view.bind(controller)
    try:
        controller.start()
    except NetworkError as e:
        logger.error(str(e))
        return 1

    view.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
