"""
Console output for the dev tools

Everything the developer sees goes through a Console:
- Coloured status lines with success/failure glyphs
- A spinner for anything that takes longer than an instant
- Raw passthrough of the supervised server's output

Styling, width measurement and the spinner come from rich. The spinner only
animates when the stream is a terminal. Otherwise (CI, tests, piped output)
it prints its text once, so logs stay readable.
"""

import sys
from typing import Optional, TextIO

from rich.console import Console as RichConsole
from rich.markup import escape
from rich.status import Status
from rich.text import Text


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences (colours, cursor moves)"""
    return Text.from_ansi(text).plain


def visible_len(text: str) -> int:
    """Terminal cells text takes up on screen"""
    return Text.from_ansi(text).cell_len


class Console:
    """Status output with an optional animated spinner"""

    def __init__(self, stream: Optional[TextIO] = None, animate: Optional[bool] = None):
        """
        Initialize console

        Args:
            stream: Output stream (default: sys.stdout)
            animate: Force spinner animation on/off (default: stream is a terminal)
        """
        self.stream = stream or sys.stdout
        self.rich = RichConsole(file=self.stream, highlight=False, soft_wrap=True)
        if animate is None:
            animate = self.rich.is_terminal
        self.animate = animate
        self.spinner_text: Optional[str] = None
        self._status: Optional[Status] = None

    def write(self, text: str) -> None:
        """Write text untouched (server passthrough)"""
        self.stream.write(text)
        self.stream.flush()

    def print(self, markup: str = '') -> None:
        """Print one line of rich markup"""
        self.rich.print(markup)

    def line(self, text: str = '') -> None:
        """Print text that may carry its own ANSI styling"""
        self.rich.print(Text.from_ansi(text) if text else '')

    def success(self, text: str) -> None:
        self.print(f'  [green]✔ {escape(text)}[/]')

    def failure(self, text: str) -> None:
        self.print(f'  [red]✖ {escape(text)}[/]')

    def info(self, text: str) -> None:
        self.print(f'[cyan]{escape(text)}[/]')

    def muted(self, text: str) -> None:
        self.print(f'[bright_black]{escape(text)}[/]')

    def error(self, text: str) -> None:
        self.print(f'[red]{escape(text)}[/]')

    # Spinner

    @property
    def spinning(self) -> bool:
        return self.spinner_text is not None

    def start_spinner(self, text: str) -> None:
        """Show a spinner with text, replacing any spinner already running"""
        self.spinner_text = text

        if not self.animate:
            self.print(f'  [cyan]…[/] [bright_black]{escape(text)}[/]')
            return

        status = f'[bright_black]{escape(text)}[/]'
        if self._status is not None:
            self._status.update(status)
            return
        self._status = self.rich.status(status, spinner='dots', spinner_style='cyan')
        self._status.start()

    def stop_spinner(self, success: bool = True, text: str = '') -> None:
        """Stop the spinner and optionally print a final status line"""
        self.spinner_text = None
        if self._status is not None:
            self._status.stop()
            self._status = None

        if text:
            if success:
                self.success(text)
            else:
                self.failure(text)
