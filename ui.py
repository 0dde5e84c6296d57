import logging
import queue
import sys
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Tuple

from game_logic import Board, in_bounds

logger = logging.getLogger(__name__)


class GameController(ABC):
    """What the presentation layer may call, whichever side it is on."""

    @abstractmethod
    def on_cell_selected(self, x: int, y: int) -> bool:
        ...

    @abstractmethod
    def on_close_requested(self):
        ...

    @abstractmethod
    def on_rematch_requested(self):
        ...

    @abstractmethod
    def answer_rematch(self, accept: bool):
        ...


class GameView:
    """What the controllers call on the presentation layer.

    Every method may be called from a network thread; implementations
    that own a GUI loop must marshal the call onto it.
    """

    def update_board(self, board: Board):
        pass

    def set_status_message(self, text: str):
        pass

    def set_title(self, text: str):
        pass

    def show_end_game_options(self):
        pass

    def hide_end_game_options(self):
        pass

    def prompt_rematch(self, opponent_name: str):
        """Ask the local player; the answer goes to controller.answer_rematch"""
        pass

    def show_result(self, text: str, winning_positions: Optional[List[Tuple[int, int]]] = None):
        self.set_status_message(text)

    def show_alert(self, text: str):
        self.set_status_message(text)


def render_board(board: Board) -> str:
    header = "    " + " ".join(f"{y:>2}" for y in range(len(board)))
    rows = [header]
    for x, row in enumerate(board):
        cells = " ".join(f"{(cell.value if cell else '.'):>2}" for cell in row)
        rows.append(f"{x:>2}  {cells}")
    return "\n".join(rows)


class ConsoleView(GameView):
    """Terminal front end used by --headless."""

    def __init__(self, out=None):
        self.out = out or sys.stdout
        self.controller: Optional[GameController] = None

    def bind(self, controller: GameController):
        self.controller = controller

    def _print(self, text: str):
        print(text, file=self.out, flush=True)

    def update_board(self, board: Board):
        self._print(render_board(board))

    def set_status_message(self, text: str):
        logger.debug(f"Status: {text}")
        self._print(f"* {text}")

    def set_title(self, text: str):
        self._print(f"== {text} ==")

    def show_end_game_options(self):
        self._print("Type 'again' for a rematch or 'quit' to leave.")

    def prompt_rematch(self, opponent_name: str):
        self._print(f"{opponent_name} wants a rematch. Type 'yes' or 'no'.")

    def show_alert(self, text: str):
        self._print(f"! {text}")

    def run(self, read_line: Callable[[], str] = input):
        """Read commands until quit or end of input."""
        self._print("Commands: '<row> <col>', 'again', 'yes', 'no', 'quit'")
        while True:
            try:
                line = read_line()
            except (EOFError, KeyboardInterrupt):
                break
            if not self.handle_command(line):
                break
        if self.controller is not None:
            self.controller.on_close_requested()

    def handle_command(self, line: str) -> bool:
        """Apply one console command; False means the user asked to quit."""
        words = line.strip().lower().split()
        if not words or self.controller is None:
            return True
        if words[0] in ("quit", "q", "exit"):
            return False
        if words[0] in ("again", "rematch"):
            self.controller.on_rematch_requested()
        elif words[0] in ("yes", "y", "no", "n"):
            self.controller.answer_rematch(words[0].startswith("y"))
        elif len(words) == 2:
            try:
                x, y = int(words[0]), int(words[1])
            except ValueError:
                self._print("Expected two numbers: <row> <col>")
            else:
                self.controller.on_cell_selected(x, y)
        else:
            self._print(f"Unknown command: {line.strip()}")
        return True


class TkGameView(GameView):
    """Canvas grid with a status line and end-of-game buttons."""

    CANVAS_SIZE = 600
    POLL_INTERVAL_MS = 50

    def __init__(self, root, title: str = "N-in-a-row"):
        import tkinter as tk
        from tkinter import ttk

        self.tk = tk
        self.root = root
        self.root.title(title)
        self.controller: Optional[GameController] = None
        self.board: Optional[Board] = None
        self.highlight: List[Tuple[int, int]] = []
        self._calls: "queue.Queue[Callable[[], None]]" = queue.Queue()

        self.canvas = tk.Canvas(root, bg="white", width=self.CANVAS_SIZE, height=self.CANVAS_SIZE)
        self.canvas.pack(side=tk.TOP)
        self.canvas.bind("<Button-1>", self._on_click)

        self.status_var = tk.StringVar(value="Starting...")
        self.status_label = ttk.Label(root, textvariable=self.status_var, anchor="center")
        self.status_label.pack(side=tk.TOP, fill=tk.X, pady=5)

        self.end_panel = ttk.Frame(root)
        ttk.Button(self.end_panel, text="Play again", command=self._on_play_again).pack(side=tk.LEFT, padx=5)
        ttk.Button(self.end_panel, text="Quit", command=self._on_quit).pack(side=tk.LEFT, padx=5)

        self.root.protocol("WM_DELETE_WINDOW", self._on_quit)
        self.root.after(self.POLL_INTERVAL_MS, self._drain_calls)

    def bind(self, controller: GameController):
        self.controller = controller

    def run(self):
        self.root.mainloop()

    # Calls arrive from network threads; only the Tk loop touches widgets.
    def _schedule(self, fn: Callable[[], None]):
        self._calls.put(fn)

    def _drain_calls(self):
        while True:
            try:
                fn = self._calls.get_nowait()
            except queue.Empty:
                break
            fn()
        self.root.after(self.POLL_INTERVAL_MS, self._drain_calls)

    def update_board(self, board: Board):
        snapshot = [list(row) for row in board]

        def apply():
            self.board = snapshot
            if not any(cell for row in snapshot for cell in row):
                self.highlight = []
            self.draw_grid()
        self._schedule(apply)

    def set_status_message(self, text: str):
        self._schedule(lambda: self.status_var.set(text))

    def set_title(self, text: str):
        self._schedule(lambda: self.root.title(text))

    def show_end_game_options(self):
        self._schedule(lambda: self.end_panel.pack(side=self.tk.TOP, pady=5))

    def hide_end_game_options(self):
        self._schedule(self.end_panel.pack_forget)

    def prompt_rematch(self, opponent_name: str):
        from tkinter import messagebox

        def ask():
            accept = messagebox.askyesno("Rematch", f"{opponent_name} wants to play again. Accept?")
            if self.controller is not None:
                self.controller.answer_rematch(accept)
        self._schedule(ask)

    def show_result(self, text: str, winning_positions: Optional[List[Tuple[int, int]]] = None):
        from tkinter import messagebox

        def show():
            self.highlight = list(winning_positions or [])
            self.draw_grid()
            self.status_var.set(text)
            messagebox.showinfo("Game over", text)
        self._schedule(show)

    def show_alert(self, text: str):
        from tkinter import messagebox

        def show():
            self.status_var.set(text)
            messagebox.showinfo("Notice", text)
        self._schedule(show)

    def _cell_size(self) -> int:
        if not self.board:
            return self.CANVAS_SIZE
        return self.CANVAS_SIZE // len(self.board)

    def draw_grid(self):
        self.canvas.delete("all")
        if not self.board:
            return

        size = len(self.board)
        cell = self._cell_size()
        extent = cell * size

        for x, y in self.highlight:
            self.canvas.create_rectangle(
                y * cell, x * cell, (y + 1) * cell, (x + 1) * cell,
                fill="yellow", outline=""
            )

        for i in range(size + 1):
            self.canvas.create_line(i * cell, 0, i * cell, extent, fill="gray")
            self.canvas.create_line(0, i * cell, extent, i * cell, fill="gray")

        for x, row in enumerate(self.board):
            for y, symbol in enumerate(row):
                if symbol is not None:
                    self.draw_symbol(x, y, symbol.value)

    def draw_symbol(self, x: int, y: int, symbol: str):
        cell = self._cell_size()
        pad = cell // 5
        left, top = y * cell + pad, x * cell + pad
        right, bottom = (y + 1) * cell - pad, (x + 1) * cell - pad

        if symbol == "X":
            self.canvas.create_line(left, top, right, bottom, fill="blue", width=3)
            self.canvas.create_line(right, top, left, bottom, fill="blue", width=3)
        elif symbol == "O":
            self.canvas.create_oval(left, top, right, bottom, outline="red", width=3)

    def _on_click(self, event):
        if not self.board or self.controller is None:
            return
        cell = self._cell_size()
        x, y = event.y // cell, event.x // cell
        if in_bounds(self.board, x, y):
            self.controller.on_cell_selected(x, y)

    def _on_play_again(self):
        if self.controller is not None:
            self.controller.on_rematch_requested()

    def _on_quit(self):
        if self.controller is not None:
            self.controller.on_close_requested()
        self.root.destroy()
