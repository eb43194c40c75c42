"""
Route Script Loader

Executes the route script (app/app.py) in a fresh module and returns the
RouteTable built from the app it creates.

Design principles:
- Every load runs the script from scratch (no module cache): helper
  modules it imports from its own directory are forgotten afterwards
- No bytecode is written next to the script, so loading never looks like
  a source change to the watcher
- Failures become DiagnosticRecords pointing at the script line
"""

import importlib
import sys
import traceback
import types
from pathlib import Path
from typing import Optional, Set

from .diagnostics import DiagnosticRecord, code_frame, from_syntax_error
from .errors import RouteDefinitionError
from .routes import RouteBuilder, RouteTable

EXIT_SUGGESTION = 'Remove the exit call; the route script has to run to the end so the app is registered.'


def load_route_table(path: Path | str, display_path: Optional[str] = None) -> RouteTable:
    """
    Run a route script and build its route table.

    Args:
        path: Path to the route script
        display_path: Path shown in diagnostics (default: path)

    Returns:
        The RouteTable of the app the script creates

    Raises:
        RouteDefinitionError: If the script doesn't compile, raises or exits
            while running, or never creates an app
    """
    path = Path(path)
    shown = display_path or str(path)

    try:
        source = path.read_text(encoding='utf-8')
    except OSError as e:
        raise RouteDefinitionError(
            f'Cannot read route script {shown}',
            [DiagnosticRecord(title='Route Definition Error', file=shown, message=f'Cannot read file: {e}')]
        )

    try:
        code = compile(source, str(path), 'exec', dont_inherit=True)
    except SyntaxError as e:
        raise RouteDefinitionError(f'Syntax error in {shown}', [from_syntax_error(e, shown)])

    module = types.ModuleType('__orbit_app__')
    module.__file__ = str(path)

    # Let the script import helpers that sit next to it
    script_root = path.parent.resolve()
    script_dir = str(script_root)
    added = script_dir not in sys.path
    if added:
        sys.path.insert(0, script_dir)
    previous = sys.dont_write_bytecode
    sys.dont_write_bytecode = True
    loaded_before = set(sys.modules)
    importlib.invalidate_caches()

    try:
        exec(code, module.__dict__)
    except (Exception, SystemExit) as e:
        raise RouteDefinitionError(
            f'Route script {shown} failed: {e}',
            [_record_from_exception(e, path, shown, source)]
        )
    finally:
        sys.dont_write_bytecode = previous
        if added:
            sys.path.remove(script_dir)
        forget_modules(loaded_before, script_root)

    builder = find_builder(module)
    if builder is None:
        raise RouteDefinitionError(
            f'{shown} does not create an app',
            [DiagnosticRecord(
                title='Route Definition Error',
                file=shown,
                message='The route script does not create an app.',
                suggestion='Call create_app() from orbit_dev.routes, register your routes on it and call app.start(port).',
            )]
        )

    return builder.build()


def find_builder(module: types.ModuleType) -> Optional[RouteBuilder]:
    """
    Find the app a route script created.

    Prefers a builder whose start() was called; otherwise the first one.
    """
    builders = [value for value in vars(module).values() if isinstance(value, RouteBuilder)]
    for builder in builders:
        if builder.started:
            return builder
    return builders[0] if builders else None


def forget_modules(loaded_before: Set[str], directory: Path) -> None:
    """Drop modules imported since loaded_before whose source lives under directory"""
    for name in set(sys.modules) - loaded_before:
        module = sys.modules.get(name)
        module_file = getattr(module, '__file__', None)
        locations = [module_file] if module_file else list(getattr(module, '__path__', None) or [])
        if any(Path(location).resolve().is_relative_to(directory) for location in locations):
            del sys.modules[name]


def _record_from_exception(error: BaseException, path: Path, shown: str, source: str) -> DiagnosticRecord:
    """Point a runtime error at the deepest frame inside the route script"""
    line = None
    frame = None
    resolved = str(path)
    for entry in traceback.extract_tb(error.__traceback__):
        if entry.filename == resolved:
            line = entry.lineno

    if line is not None:
        source_lines = source.splitlines()
        if 0 < line <= len(source_lines):
            text = source_lines[line - 1]
            column = len(text) - len(text.lstrip()) + 1
            frame = code_frame(line, column, text)

    return DiagnosticRecord(
        title='Route Definition Error',
        file=shown,
        message=f'{type(error).__name__}: {error}',
        line=line,
        column=None,
        code_frame=frame,
        suggestion=EXIT_SUGGESTION if isinstance(error, SystemExit) else None,
    )
