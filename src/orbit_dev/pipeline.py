"""
Build Pipeline

One build pass:
1. Run the route script and freeze its RouteTable
2. Discover action scripts and bundle each one
3. If anything failed, stop: nothing on disk changes
4. Otherwise swap in the new bundle directory, then write routes.json and
   action_map.json

Stale or partial routing data is worse than the previous consistent build,
so metadata is only written once every bundle is in place.

Usage:
    from orbit_dev.pipeline import build

    result = build('.')
    if not result.ok:
        print(result.render())
"""

import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .app_loader import load_route_table
from .bundler import ActionBundler
from .config import DevConfig
from .diagnostics import DiagnosticRecord, code_frame, render_all
from .errors import BundleError, RouteDefinitionError
from .routes import RouteTable, ServerConfig

logger = logging.getLogger(__name__)

SCRIPT_SUFFIX = '.py'


@dataclass(frozen=True)
class ActionUnit:
    name: str
    source_path: Path
    output_path: Path


@dataclass(frozen=True)
class BuildSuccess:
    actions: Tuple[ActionUnit, ...]
    route_table: RouteTable
    dispatch_map: Dict[str, str]
    routes_file: Path
    action_map_file: Path

    @property
    def ok(self) -> bool:
        return True

    @property
    def message(self) -> str:
        return self.route_table.message


@dataclass(frozen=True)
class BuildFailure:
    diagnostics: Tuple[DiagnosticRecord, ...]

    @property
    def ok(self) -> bool:
        return False

    def render(self) -> str:
        return render_all(self.diagnostics)


BuildResult = Union[BuildSuccess, BuildFailure]


def is_action_file(path: Path, actions_dir: Path) -> bool:
    """Script files count; stubs, dunder files and _private/.hidden dirs don't"""
    if not path.is_file() or path.suffix != SCRIPT_SUFFIX:
        return False
    if path.name.startswith('__'):
        return False
    relative = path.relative_to(actions_dir)
    return not any(part.startswith(('_', '.')) for part in relative.parts[:-1])


def discover_actions(actions_dir: Path, bundle_dir: Path, extension: str,
                     display=str) -> Tuple[List[ActionUnit], List[DiagnosticRecord]]:
    """
    Find action scripts.

    Args:
        actions_dir: Directory to scan (recursively)
        bundle_dir: Where bundles will be written
        extension: Bundle file extension (e.g. '.pybundle')
        display: Formats paths for diagnostics

    Returns:
        (units, diagnostics) - one diagnostic per duplicated action name
    """
    if not actions_dir.is_dir():
        return [], []

    candidates = sorted(
        (p for p in actions_dir.rglob('*' + SCRIPT_SUFFIX) if is_action_file(p, actions_dir)),
        key=lambda p: p.relative_to(actions_dir).as_posix()
    )

    units: List[ActionUnit] = []
    seen: Dict[str, Path] = {}
    diagnostics: List[DiagnosticRecord] = []

    for path in candidates:
        name = path.stem
        if name in seen:
            first, second = display(seen[name]), display(path)
            diagnostics.append(DiagnosticRecord(
                title='Build Error',
                file=second,
                message=f'Duplicate action name "{name}": defined by both {first} and {second}',
                suggestion='Rename one of the files so every action has a unique name.',
            ))
            continue
        seen[name] = path
        units.append(ActionUnit(name=name, source_path=path, output_path=bundle_dir / f'{name}{extension}'))

    return units, diagnostics


class BuildPipeline:
    """Runs build passes for one project"""

    def __init__(self, config: DevConfig):
        self.config = config
        self.bundler = ActionBundler(
            config.app_path,
            config.actions_path,
            display=config.relative,
        )

    def build(self) -> BuildResult:
        """Run one build pass"""
        config = self.config
        diagnostics: List[DiagnosticRecord] = []

        table = self._load_routes(diagnostics)

        units, problems = discover_actions(
            config.actions_path, config.bundle_path, config.bundle_extension, display=config.relative
        )
        diagnostics.extend(problems)

        bundles: Dict[str, str] = {}
        for unit in units:
            try:
                bundles[unit.name] = self.bundler.bundle(unit.name, unit.source_path)
            except BundleError as e:
                diagnostics.extend(e.diagnostics)

        if table is not None:
            diagnostics.extend(self._check_references(table, units))
        else:
            table = RouteTable(config=ServerConfig(port=config.default_port))

        for unit in units:
            if unit.name in bundles:
                problem = _validate_bundle(unit, bundles[unit.name], config.relative)
                if problem is not None:
                    diagnostics.append(problem)

        artifacts = None
        if not diagnostics:
            try:
                artifacts = (_to_json(table.to_artifact()), _to_json(table.dispatch_map()))
            except (TypeError, ValueError) as e:
                diagnostics.append(DiagnosticRecord(
                    title='Build Error',
                    file=config.relative(config.route_script_path),
                    message=f'Route table is not JSON serializable: {e}',
                    suggestion='Reply values must be strings, numbers, booleans, lists or dicts.',
                ))

        if diagnostics:
            logger.debug('Build failed with %d diagnostic(s)', len(diagnostics))
            return BuildFailure(tuple(diagnostics))

        try:
            self._publish(units, bundles, *artifacts)
        except OSError as e:
            return BuildFailure((DiagnosticRecord(
                title='Build Error',
                file=config.relative(config.server_path),
                message=f'Cannot write build output: {e}',
            ),))

        logger.debug('Built %d action(s)', len(units))
        return BuildSuccess(
            actions=tuple(units),
            route_table=table,
            dispatch_map=table.dispatch_map(),
            routes_file=config.routes_file,
            action_map_file=config.action_map_file,
        )

    def _load_routes(self, diagnostics: List[DiagnosticRecord]) -> Optional[RouteTable]:
        script = self.config.route_script_path
        if not script.exists():
            logger.debug('No route script at %s; using an empty route table', script)
            return None
        try:
            return load_route_table(script, display_path=self.config.relative(script))
        except RouteDefinitionError as e:
            diagnostics.extend(e.diagnostics)
            return None

    def _check_references(self, table: RouteTable, units: Sequence[ActionUnit]) -> List[DiagnosticRecord]:
        """Every action a route names must exist"""
        known = {unit.name for unit in units}
        script = self.config.route_script_path
        shown = self.config.relative(script)
        try:
            lines = script.read_text(encoding='utf-8').splitlines()
        except OSError:
            lines = []

        problems = []
        for name in table.action_names():
            if name in known:
                continue
            line, column, frame = _locate_literal(lines, name)
            problems.append(DiagnosticRecord(
                title='Build Error',
                file=shown,
                message=f'Route refers to unknown action "{name}"',
                line=line,
                column=column,
                code_frame=frame,
                suggestion=f'Create {self.config.relative(self.config.actions_path)}/{name}.py or fix the action name.',
            ))
        return problems

    def _publish(self, units: Sequence[ActionUnit], bundles: Dict[str, str],
                 routes_json: str, action_map_json: str) -> None:
        """Stage bundles, swap the bundle directory, then write metadata"""
        bundle_dir = self.config.bundle_path
        bundle_dir.parent.mkdir(parents=True, exist_ok=True)

        staging = Path(tempfile.mkdtemp(prefix=f'.{bundle_dir.name}.staging-', dir=bundle_dir.parent))
        try:
            for unit in units:
                (staging / unit.output_path.name).write_text(bundles[unit.name], encoding='utf-8')
            replace_directory(staging, bundle_dir)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        self.config.server_path.mkdir(parents=True, exist_ok=True)
        write_atomic(self.config.routes_file, routes_json)
        write_atomic(self.config.action_map_file, action_map_json)


def build(root_dir: Path | str = '.', config: Optional[DevConfig] = None) -> BuildResult:
    """Run one build pass for the project at root_dir"""
    return BuildPipeline(config or DevConfig(root_dir)).build()


def replace_directory(source: Path, target: Path) -> None:
    """Put source in target's place; the old target is removed afterwards"""
    old = None
    if target.exists():
        old = target.with_name(f'.{target.name}.old-{os.getpid()}')
        if old.exists():
            shutil.rmtree(old)
        os.replace(target, old)
    os.replace(source, target)
    if old is not None:
        shutil.rmtree(old, ignore_errors=True)


def write_atomic(path: Path, content: str) -> None:
    """Write via a temp file in the same directory and rename over path"""
    fd, temp_name = tempfile.mkstemp(prefix=f'.{path.name}.', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
            f.write(content)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.unlink(temp_name)
        raise


def _to_json(data) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + '\n'


def _validate_bundle(unit: ActionUnit, text: str, display) -> Optional[DiagnosticRecord]:
    try:
        compile(text, str(unit.output_path), 'exec', dont_inherit=True)
    except SyntaxError as e:
        return DiagnosticRecord(
            title='Build Error',
            file=display(unit.source_path),
            message=f'Generated bundle for "{unit.name}" does not compile: {e.msg}',
        )
    return None


def _locate_literal(lines: List[str], value: str):
    """Line, column and code frame of the first string literal equal to value"""
    pattern = re.compile(r'''(['"])''' + re.escape(value) + r'\1')
    for number, text in enumerate(lines, start=1):
        match = pattern.search(text)
        if match:
            column = match.start() + 1
            return number, column, code_frame(number, column, text)
    return None, None, None
