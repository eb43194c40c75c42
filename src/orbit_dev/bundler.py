"""
Action Bundler

Turns one action script into a self-contained bundle the server can
evaluate without a filesystem or the host's standard library.

What happens to an action:
- Every module it imports from the app is inlined (transitively)
- Imports of host built-ins (os, pathlib, hashlib, subprocess, ...) are
  rewritten to the runtime's shim modules while bundling; the server has
  no access to the real ones
- Modules the runtime provides as-is (json, re, datetime, ...) stay imports
- Anything else is an error, reported with file/line/column

The bundle ends with a wrapper that takes the action's exported function
(named after the action, or `handler`) and registers it as a global with
the action's name through the host's define_action().
"""

import ast
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .diagnostics import DiagnosticRecord, code_frame, from_syntax_error
from .errors import BundleError

logger = logging.getLogger(__name__)

ENTRY_KEY = '__action__'
ROOT_KEY = '__app__'

# Host built-in module -> runtime shim
BUILTIN_SHIMS: Dict[str, str] = {
    'os': 'orbit.node.os',
    'platform': 'orbit.node.os',
    'os.path': 'orbit.node.path',
    'pathlib': 'orbit.node.path',
    'io': 'orbit.node.fs',
    'shutil': 'orbit.node.fs',
    'tempfile': 'orbit.node.fs',
    'hashlib': 'orbit.node.crypto',
    'hmac': 'orbit.node.crypto',
    'secrets': 'orbit.node.crypto',
    'subprocess': 'orbit.node.process',
    'sys': 'orbit.node.process',
    'signal': 'orbit.node.process',
    'functools': 'orbit.node.util',
    'inspect': 'orbit.node.util',
}

# Pure modules the runtime ships unchanged
RUNTIME_EXTERNALS: FrozenSet[str] = frozenset({
    '__future__', 'json', 're', 'math', 'datetime', 'time', 'base64', 'uuid',
    'collections', 'dataclasses', 'typing', 'enum', 'itertools', 'string',
    'decimal', 'random', 'copy',
})

HANDLER_FALLBACK = 'handler'

BUNDLE_TEMPLATE = '''\
# Orbit action bundle: {name}
# Source: {source}
# Generated by orbit-dev. Do not edit.
Orbit = t

__orbit_sources__ = {sources}


def __orbit_load__(host):
    cache = {{}}

    class Module:
        def __init__(self, key):
            self.__name__ = key

    def require(key):
        if key in cache:
            return cache[key]
        if key not in __orbit_sources__:
            module = host['__orbit_shim__'](key)
            cache[key] = module
            return module
        module = Module(key)
        cache[key] = module
        namespace = module.__dict__
        namespace['__orbit_require__'] = require
        namespace['__orbit_from__'] = import_from
        namespace['__orbit_star__'] = import_star
        namespace['t'] = host.get('t')
        namespace['Orbit'] = host.get('t')
        exec(compile(__orbit_sources__[key], {name!r} + '/' + key, 'exec'), namespace)
        parent, _, child = key.rpartition('.')
        if parent in __orbit_sources__:
            setattr(require(parent), child, module)
        return module

    def import_from(key, name):
        module = require(key)
        if hasattr(module, name):
            return getattr(module, name)
        submodule = key + '.' + name
        if submodule in __orbit_sources__:
            return require(submodule)
        raise ImportError('cannot import name ' + repr(name) + ' from ' + repr(key))

    def import_star(key, namespace):
        module = require(key)
        names = getattr(module, '__all__', None)
        if names is None:
            names = [n for n in vars(module) if not n.startswith('_')]
        for n in names:
            namespace[n] = getattr(module, n)

    return require({entry!r})


def __orbit_register__():
    exports = __orbit_load__(globals())
    fn = getattr(exports, {name!r}, None)
    if fn is None:
        fn = getattr(exports, {fallback!r}, None)
    if not callable(fn):
        raise RuntimeError({missing!r})
    globals()[{name!r}] = define_action(fn)


__orbit_register__()
'''


@dataclass(frozen=True)
class ResolvedImport:
    kind: str  # shim, external or local
    key: str
    path: Optional[Path] = None


class ActionBundler:
    """Bundles action scripts of one app"""

    def __init__(self, app_dir: Path | str, actions_dir: Path | str,
                 shims: Optional[Mapping[str, str]] = None,
                 externals: Optional[FrozenSet[str]] = None,
                 display: Optional[Callable[[Path], str]] = None):
        """
        Initialize bundler.

        Args:
            app_dir: App root; local imports resolve inside it
            actions_dir: Directory holding the action scripts
            shims: Built-in module -> shim map (default: BUILTIN_SHIMS)
            externals: Modules left as plain imports (default: RUNTIME_EXTERNALS)
            display: Formats paths for diagnostics (default: str)
        """
        self.app_dir = Path(app_dir).resolve()
        self.actions_dir = Path(actions_dir).resolve()
        self.shims = dict(BUILTIN_SHIMS if shims is None else shims)
        self.externals = RUNTIME_EXTERNALS if externals is None else externals
        self.display = display or str

    def bundle(self, name: str, source_path: Path | str) -> str:
        """
        Bundle one action.

        Args:
            name: Action name (global the handler is registered under)
            source_path: The action script

        Returns:
            Bundle source text

        Raises:
            BundleError: With one DiagnosticRecord per problem found
        """
        source_path = Path(source_path).resolve()
        modules: Dict[str, str] = {}
        diagnostics: List[DiagnosticRecord] = []
        queue: List[Tuple[str, Path]] = [(ENTRY_KEY, source_path)]

        while queue:
            key, path = queue.pop(0)
            if key in modules:
                continue

            code, dependencies, problems = self._transform(path, is_entry=(key == ENTRY_KEY), name=name)
            modules[key] = code
            diagnostics.extend(problems)
            queue.extend(dependencies)

        if diagnostics:
            raise BundleError(f'Build failed with {len(diagnostics)} error(s)', diagnostics)

        logger.debug('Bundled %s with %d module(s)', name, len(modules))
        return render_bundle(name, self.display(source_path), modules)

    def _transform(self, path: Path, is_entry: bool, name: str):
        """Parse and rewrite one module; returns (code, dependencies, diagnostics)"""
        shown = self.display(path)

        if path.is_dir():
            # Namespace package: nothing to run
            return '', [], []

        try:
            source = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            return '', [], [DiagnosticRecord(title='Build Error', file=shown, message=f'Cannot read file: {e}')]

        try:
            tree = ast.parse(source, filename=str(path))
        except SyntaxError as e:
            return '', [], [from_syntax_error(e, shown, title='Build Error')]

        problems = []
        if is_entry:
            missing = _check_export(tree, name, shown)
            if missing is not None:
                problems.append(missing)

        rewriter = ImportRewriter(self, path, source.splitlines(), shown)
        tree = rewriter.visit(tree)
        ast.fix_missing_locations(tree)
        problems.extend(rewriter.diagnostics)

        return ast.unparse(tree) + '\n', rewriter.dependencies, problems

    # Resolution

    def shim_for(self, name: str) -> Optional[str]:
        """Most specific shim for a dotted module name"""
        parts = name.split('.')
        for end in range(len(parts), 0, -1):
            shim = self.shims.get('.'.join(parts[:end]))
            if shim is not None:
                return shim
        return None

    def resolve(self, name: Optional[str], importer: Path, level: int = 0) -> Optional[ResolvedImport]:
        """
        Resolve an import seen in importer.

        Args:
            name: Dotted module name (None for `from . import x`)
            importer: File containing the import
            level: Number of leading dots of a relative import

        Returns:
            ResolvedImport, or None if nothing matches
        """
        if level == 0:
            shim = self.shim_for(name)
            if shim is not None:
                return ResolvedImport('shim', shim)
            if name.split('.')[0] in self.externals:
                return ResolvedImport('external', name)
            roots = []
            for root in (importer.parent, self.actions_dir, self.app_dir):
                if root not in roots:
                    roots.append(root)
        else:
            base = importer.parent
            for _ in range(level - 1):
                base = base.parent
            if not name:
                package_init = base / '__init__.py'
                return self._local(package_init if package_init.is_file() else base)
            roots = [base]

        for root in roots:
            path = find_module(root, name)
            if path is not None:
                return self._local(path)

        return None

    def _local(self, path: Path) -> ResolvedImport:
        return ResolvedImport('local', self.key_for(path), path)

    def key_for(self, path: Path) -> str:
        """Stable bundle key for a local module file or package directory"""
        path = path.resolve()
        for root, prefix in ((self.app_dir, ()), (self.actions_dir, ('__actions__',))):
            try:
                relative = path.relative_to(root)
                break
            except ValueError:
                continue
        else:
            relative, prefix = Path(path.name), ('__external__',)

        parts = list(prefix) + list(relative.parts)
        if parts and parts[-1].endswith('.py'):
            parts[-1] = parts[-1][:-3]
        if parts and parts[-1] == '__init__':
            parts.pop()
        return '.'.join(parts) or ROOT_KEY


def find_module(root: Path, dotted: str) -> Optional[Path]:
    """Locate a dotted module under root: a.b -> a/b.py, a/b/__init__.py or a/b/"""
    candidate = root.joinpath(*dotted.split('.'))
    module_file = candidate.with_name(candidate.name + '.py')
    if module_file.is_file():
        return module_file.resolve()
    if candidate.is_dir():
        package_init = candidate / '__init__.py'
        if package_init.is_file():
            return package_init.resolve()
        return candidate.resolve()
    return None


class ImportRewriter(ast.NodeTransformer):
    """Rewrites import statements of one module into bundle lookups"""

    def __init__(self, bundler: ActionBundler, path: Path, source_lines: List[str], shown: str):
        self.bundler = bundler
        self.path = path
        self.source_lines = source_lines
        self.shown = shown
        self.dependencies: List[Tuple[str, Path]] = []
        self.diagnostics: List[DiagnosticRecord] = []

    def visit_Import(self, node: ast.Import):
        statements = []
        for alias in node.names:
            target = self.bundler.resolve(alias.name, self.path)
            if target is None:
                self._unresolved(node, alias.name)
                continue

            if target.kind == 'external':
                statements.append(ast.Import(names=[alias]))
                continue

            self._depend(target)
            if alias.asname:
                statements.append(_parse(f'{alias.asname} = __orbit_require__({target.key!r})'))
                continue

            # `import a.b` binds `a`
            top = alias.name.split('.')[0]
            if top == alias.name:
                statements.append(_parse(f'{top} = __orbit_require__({target.key!r})'))
                continue

            top_target = self.bundler.resolve(top, self.path)
            if top_target is None or top_target.kind == 'external':
                self._unresolved(node, top)
                continue
            self._depend(top_target)
            if target.kind == 'local':
                statements.append(_parse(f'__orbit_require__({target.key!r})'))
            statements.append(_parse(f'{top} = __orbit_require__({top_target.key!r})'))

        return self._located(node, statements)

    def visit_ImportFrom(self, node: ast.ImportFrom):
        display_name = '.' * node.level + (node.module or '')
        target = self.bundler.resolve(node.module, self.path, node.level)
        if target is None:
            self._unresolved(node, display_name)
            return self._located(node, [])

        if target.kind == 'external':
            return node

        self._depend(target)
        statements = []
        for alias in node.names:
            if alias.name == '*':
                statements.append(_parse(f'__orbit_star__({target.key!r}, globals())'))
                continue

            # `from pkg import mod` may name a submodule rather than an attribute
            if target.kind == 'local' and _is_package(target.path):
                package_dir = target.path if target.path.is_dir() else target.path.parent
                submodule = find_module(package_dir, alias.name)
                if submodule is not None:
                    self._depend(self.bundler._local(submodule))

            bound = alias.asname or alias.name
            statements.append(_parse(f'{bound} = __orbit_from__({target.key!r}, {alias.name!r})'))

        return self._located(node, statements)

    def _depend(self, target: ResolvedImport) -> None:
        if target.kind == 'local':
            self.dependencies.append((target.key, target.path))

    def _located(self, node: ast.stmt, statements: List[ast.stmt]):
        if not statements:
            statements = [ast.Pass()]
        for statement in statements:
            ast.copy_location(statement, node)
        return statements

    def _unresolved(self, node: ast.stmt, name: str) -> None:
        line = node.lineno
        column = node.col_offset + 1
        frame = None
        if 0 < line <= len(self.source_lines):
            frame = code_frame(line, column, self.source_lines[line - 1])

        self.diagnostics.append(DiagnosticRecord(
            title='Build Error',
            file=self.shown,
            message=f'Could not resolve "{name}"',
            line=line,
            column=column,
            code_frame=frame,
            suggestion=f'Add the module "{name}" to the app directory, or use a module the runtime provides.',
        ))


def _parse(statement: str) -> ast.stmt:
    return ast.parse(statement).body[0]


def _is_package(path: Path) -> bool:
    return path.is_dir() or path.name == '__init__.py'


def _check_export(tree: ast.Module, name: str, shown: str) -> Optional[DiagnosticRecord]:
    """An action must bind its own name or `handler` at module level"""
    bound = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bound.add(node.name)
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name):
                    bound.add(target.id)
        elif isinstance(node, (ast.AnnAssign, ast.AugAssign)) and isinstance(node.target, ast.Name):
            bound.add(node.target.id)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name == '*':
                    return None
                bound.add(alias.asname or alias.name.split('.')[0])

    if name in bound or HANDLER_FALLBACK in bound:
        return None

    return DiagnosticRecord(
        title='Build Error',
        file=shown,
        message=f'Action "{name}" does not export a function named "{name}" or "{HANDLER_FALLBACK}"',
        suggestion=f'Define `def {name}(req):` in {shown}.',
    )


def render_bundle(name: str, source: str, modules: Mapping[str, str]) -> str:
    """Assemble the bundle text from rewritten module sources"""
    sources = '{\n' + ''.join(f'    {key!r}: {code!r},\n' for key, code in modules.items()) + '}'
    return BUNDLE_TEMPLATE.format(
        name=name,
        source=source,
        sources=sources,
        entry=ENTRY_KEY,
        fallback=HANDLER_FALLBACK,
        missing=f"[Orbit] Action '{name}' not found or not a function",
    )
