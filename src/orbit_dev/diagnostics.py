"""
Diagnostics Renderer

Turns failure records into bordered, fixed-width terminal panels.

Design principles:
- Rendering is a pure function of the record (no I/O, no state)
- Widths are measured in terminal cells by rich, never on raw ANSI text
- One panel per failure; several failures become "Error i/N"
"""

import io
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from rich import box
from rich.console import Console as RichConsole, Group
from rich.panel import Panel
from rich.text import Text

from . import __version__

BOX_WIDTH = 72

FOOTER_NAME = '⏣ Orbit'


@dataclass(frozen=True)
class DiagnosticRecord:
    """One failure, ready to be rendered once and discarded"""
    title: str
    file: str
    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    code_frame: Optional[str] = None
    suggestion: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        if self.line is None:
            return None
        loc = f'at {self.file}:{self.line}'
        if self.column is not None:
            loc += f':{self.column}'
        return loc


def code_frame(line: int, column: Optional[int], line_text: str) -> str:
    """
    Source excerpt with a caret under the offending column.

        3 | def login(req)
          |               ^
    """
    text = line_text.rstrip('\r\n').expandtabs(4)
    col = max(0, (column or 1) - 1)
    gutter = ' ' * len(str(line))
    return f'{line} | {text}\n{gutter} | {" " * col}^'


def panel(record: DiagnosticRecord) -> Panel:
    """
    Build the rich Panel for a record.

    Message, file and suggestion wrap on visible width (ANSI styling in the
    message is kept, never counted). Code frame lines are cropped instead so
    the caret stays under its column.
    """
    parts: List[Text] = []

    if record.title:
        parts.append(Text(record.title, style='bold'))

    if record.file:
        parts.append(Text(record.file, overflow='fold'))

    if record.message:
        parts.append(Text())
        parts.append(Text.from_ansi(record.message, overflow='fold'))

    if record.location:
        parts.append(Text(record.location, style='bright_black', overflow='fold'))

    if record.code_frame:
        parts.append(Text())
        for frame_line in record.code_frame.split('\n'):
            parts.append(Text(frame_line, no_wrap=True, overflow='ellipsis'))

    if record.suggestion:
        parts.append(Text())
        parts.append(Text('Recommended fix: ' + record.suggestion, overflow='fold'))

    parts.append(Text())
    parts.append(Text(f'{FOOTER_NAME}      {__version__}', style='bright_black'))

    return Panel(Group(*parts), box=box.SQUARE, border_style='red', width=BOX_WIDTH, padding=(0, 1))


def render(record: DiagnosticRecord) -> str:
    """Render a DiagnosticRecord as a red bordered panel (ANSI text)"""
    console = RichConsole(
        file=io.StringIO(),
        width=BOX_WIDTH,
        force_terminal=True,
        color_system='standard',
        highlight=False,
        legacy_windows=False,
    )
    console.print(panel(record))
    return console.file.getvalue().rstrip('\n')


def render_all(records: Sequence[DiagnosticRecord]) -> str:
    """
    Render every record of one failure.

    With more than one record, titles become "<title> i/N".
    """
    total = len(records)
    panels = []
    for i, record in enumerate(records, start=1):
        if total > 1:
            record = replace(record, title=f'{record.title} {i}/{total}')
        panels.append(render(record))
    return '\n\n'.join(panels)


def from_syntax_error(error: SyntaxError, file: str, title: str = 'Syntax Error') -> DiagnosticRecord:
    """Build a record from a SyntaxError raised while compiling file"""
    message = error.msg or 'invalid syntax'
    line = error.lineno
    column = error.offset
    frame = None
    if line is not None and error.text:
        frame = code_frame(line, column, error.text)

    suggestion = None
    lowered = message.lower()
    if 'expected' in lowered:
        suggestion = 'Check for missing or misplaced syntax elements'
    elif 'never closed' in lowered or 'unmatched' in lowered:
        suggestion = 'Balance the brackets around this line'
    elif 'invalid syntax' in lowered or 'unexpected' in lowered:
        suggestion = 'Remove or fix the unexpected token'
    elif 'indent' in lowered:
        suggestion = 'Make the indentation of this block consistent'

    return DiagnosticRecord(
        title=title,
        file=file,
        message=message,
        line=line,
        column=column,
        code_frame=frame,
        suggestion=suggestion,
    )
