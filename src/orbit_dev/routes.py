"""
Route definitions

The route script (app/app.py) asks for a builder and registers routes on it:

    from orbit_dev.routes import create_app

    app = create_app()
    app.post('/lg').action('login')
    app.get('/').reply('Hello')
    app.get('/users/:id<number>').action('user')
    app.start(5100, 'Server ready')

Each build loads the script fresh, so every build gets its own builder and
nothing accumulates between builds. builder.build() freezes the result into
a RouteTable, which knows how to serialize itself into the two artifacts the
server reads (routes.json and action_map.json).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

HTTP_METHODS = ('GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD', 'OPTIONS')

KIND_REPLY = 'reply'
KIND_ACTION = 'action'
KIND_DYNAMIC_ACTION = 'dynamic-action'


@dataclass(frozen=True)
class ServerConfig:
    port: int = 3000
    threads: Optional[int] = None
    stack_mb: int = 8

    def to_artifact(self) -> Dict[str, Any]:
        config = {'port': self.port}
        # Left out when unset so the server picks its own default
        if self.threads is not None:
            config['threads'] = self.threads
        config['stack_mb'] = self.stack_mb
        return config


@dataclass(frozen=True)
class RouteEntry:
    method: str
    path: str
    kind: str
    value: Any

    @property
    def key(self) -> str:
        return f'{self.method}:{self.path}'

    @property
    def reply_type(self) -> str:
        """Artifact type: json, text or action"""
        if self.kind == KIND_REPLY:
            return 'json' if isinstance(self.value, (dict, list)) else 'text'
        return 'action'


@dataclass(frozen=True)
class RouteTable:
    config: ServerConfig = field(default_factory=ServerConfig)
    routes: Tuple[RouteEntry, ...] = ()
    dynamic_routes: Tuple[RouteEntry, ...] = ()
    message: str = ''

    def static_routes(self) -> Dict[str, RouteEntry]:
        return {entry.key: entry for entry in self.routes}

    def dispatch_map(self) -> Dict[str, str]:
        """Static action routes only: METHOD:path -> action name"""
        return {entry.key: entry.value for entry in self.routes if entry.kind == KIND_ACTION}

    def action_names(self) -> List[str]:
        """Every action referenced by a route, in registration order"""
        names = []
        for entry in self.routes + self.dynamic_routes:
            if entry.kind != KIND_REPLY and entry.value not in names:
                names.append(entry.value)
        return names

    def to_artifact(self) -> Dict[str, Any]:
        """routes.json content"""
        return {
            '__config': self.config.to_artifact(),
            'routes': {
                entry.key: {'type': entry.reply_type, 'value': entry.value}
                for entry in self.routes
            },
            '__dynamic_routes': [
                {'method': entry.method, 'pattern': entry.path, 'action': entry.value}
                for entry in self.dynamic_routes
            ],
        }

    def resolve(self, method: str, path: str) -> Optional[Tuple[RouteEntry, Dict[str, str]]]:
        """
        Find the route serving a request.

        Static routes are looked up by key. Dynamic routes are tried in
        registration order and the first structural match wins; a more
        specific pattern registered later never takes precedence.

        Returns:
            (entry, params) or None
        """
        method = method.upper()
        entry = self.static_routes().get(f'{method}:{path}')
        if entry is not None:
            return entry, {}

        for entry in self.dynamic_routes:
            if entry.method != method:
                continue
            params = match_pattern(entry.path, path)
            if params is not None:
                return entry, params

        return None


def match_pattern(pattern: str, path: str) -> Optional[Dict[str, str]]:
    """
    Match a path against a pattern like /users/:id<number>/posts/:slug.

    Returns:
        Captured params, or None if the path doesn't match
    """
    pattern_segments = pattern.strip('/').split('/')
    path_segments = path.strip('/').split('/')

    if len(pattern_segments) != len(path_segments):
        return None

    params = {}
    for pat, value in zip(pattern_segments, path_segments):
        if pat.startswith(':'):
            name, _, kind = pat[1:].partition('<')
            kind = kind.rstrip('>') or 'string'

            if kind == 'number':
                try:
                    int(value)
                except ValueError:
                    return None
            elif kind != 'string':
                return None

            params[name] = value
        elif pat != value:
            return None

    return params


class RouteRegistration:
    """Returned by app.get()/app.post(); finish it with reply() or action()"""

    def __init__(self, builder: 'RouteBuilder', method: str, path: str):
        self._builder = builder
        self.method = method
        self.path = path

    def reply(self, value: Any) -> None:
        """Serve a fixed value (dict/list as JSON, anything else as text)"""
        self._builder._add_static(RouteEntry(self.method, self.path, KIND_REPLY, value))

    def action(self, name: str) -> None:
        """Dispatch to the action named name"""
        if ':' in self.path:
            self._builder._add_dynamic(RouteEntry(self.method, self.path, KIND_DYNAMIC_ACTION, name))
        else:
            self._builder._add_static(RouteEntry(self.method, self.path, KIND_ACTION, name))


class RouteBuilder:
    """Collects route registrations for one load of the route script"""

    def __init__(self):
        self._routes: Dict[str, RouteEntry] = {}
        self._dynamic: Dict[str, List[RouteEntry]] = {}
        self.config = ServerConfig()
        self.message = ''
        self.started = False

    def route(self, method: str, path: str) -> RouteRegistration:
        method = method.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f'Unsupported HTTP method: {method}')
        return RouteRegistration(self, method, path)

    def get(self, path: str) -> RouteRegistration:
        return self.route('GET', path)

    def post(self, path: str) -> RouteRegistration:
        return self.route('POST', path)

    def put(self, path: str) -> RouteRegistration:
        return self.route('PUT', path)

    def delete(self, path: str) -> RouteRegistration:
        return self.route('DELETE', path)

    def patch(self, path: str) -> RouteRegistration:
        return self.route('PATCH', path)

    def log(self, module: str, message: str) -> None:
        print(f'[\x1b[35m{module}\x1b[0m] {message}')

    def start(self, port: int = 3000, message: str = '', threads: Optional[int] = None,
              stack_mb: int = 8) -> None:
        """
        Record the server configuration.

        Args:
            port: Port the server listens on
            message: Printed once the metadata is written
            threads: Worker threads (None lets the server decide)
            stack_mb: Worker stack size in MB
        """
        self.config = ServerConfig(port=int(port), threads=threads, stack_mb=int(stack_mb))
        self.message = message
        self.started = True

    def build(self) -> RouteTable:
        """Freeze the registrations into a RouteTable"""
        dynamic = []
        for entries in self._dynamic.values():
            dynamic.extend(entries)
        return RouteTable(
            config=self.config,
            routes=tuple(self._routes.values()),
            dynamic_routes=tuple(dynamic),
            message=self.message,
        )

    def _add_static(self, entry: RouteEntry) -> None:
        self._routes[entry.key] = entry

    def _add_dynamic(self, entry: RouteEntry) -> None:
        self._dynamic.setdefault(entry.method, []).append(entry)


def create_app() -> RouteBuilder:
    """Entry point for route scripts"""
    return RouteBuilder()
