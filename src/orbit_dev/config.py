"""
Dev configuration loader

Reads orbit.tsv from the project root to get build and supervisor settings.
Environment variables (ORBIT_<KEY>) override the file; anything not set
falls back to defaults.

orbit.tsv format (tab separated, # for comments):

    # key	value
    server_command	cargo run --release
    debounce_ms	250
"""

import csv
import os
import shlex
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConfigError

CONFIG_FILENAME = 'orbit.tsv'
ENV_PREFIX = 'ORBIT_'

# key -> (type, default)
SETTINGS: Dict[str, tuple] = {
    'app_dir': (str, 'app'),
    'actions_dir': (str, 'app/actions'),
    'route_script': (str, 'app/app.py'),
    'server_dir': (str, 'server'),
    'bundle_dir': (str, 'server/src/actions'),
    'bundle_extension': (str, '.pybundle'),
    'server_command': (str, 'cargo run --quiet'),
    'readiness_marker': (str, 'Orbit server running'),
    'default_port': (int, 3000),
    'debounce_ms': (int, 300),
    'stability_ms': (int, 500),
    'slow_boot_s': (float, 15.0),
    'min_viable_runtime_s': (float, 15.0),
    'max_attempts': (int, 3),
    'port_retry_delay_ms': (int, 1000),
    'crash_retry_delay_ms': (int, 2000),
    'settle_delay_ms': (int, 200),
    'retry_settle_delay_ms': (int, 500),
    'stop_timeout_s': (float, 5.0),
}


class DevConfig:
    """Build and supervisor settings for one project root"""

    def __init__(self, root_dir: Path | str = '.', overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Load configuration.

        Args:
            root_dir: Project root (holds app/, server/ and orbit.tsv)
            overrides: Values that win over file and environment (tests, CLI)
            environ: Environment to read ORBIT_* from (default: os.environ)
        """
        self.root_dir = Path(root_dir).resolve()
        self.config_file = self.root_dir / CONFIG_FILENAME
        self.sources: Dict[str, str] = {}
        self._values: Dict[str, Any] = {key: default for key, (_, default) in SETTINGS.items()}
        self._load(os.environ if environ is None else environ, overrides or {})

    def _load(self, environ, overrides: Dict[str, Any]):
        """Apply file, then environment, then explicit overrides"""
        if self.config_file.exists():
            with open(self.config_file, 'r', encoding='utf-8', newline='') as f:
                reader = csv.reader(
                    (line for line in f if line.strip() and not line.lstrip().startswith('#')),
                    delimiter='\t'
                )
                for row in reader:
                    if len(row) < 2 or row[0].strip() not in SETTINGS:
                        continue
                    self._set(row[0].strip(), row[1].strip(), CONFIG_FILENAME)

        for key in SETTINGS:
            env_name = ENV_PREFIX + key.upper()
            if env_name in environ:
                self._set(key, environ[env_name], env_name)

        for key, value in overrides.items():
            if key not in SETTINGS:
                raise ConfigError(f'Unknown setting: {key}')
            self._set(key, value, 'override')

    def _set(self, key: str, raw: Any, source: str):
        kind = SETTINGS[key][0]
        try:
            value = kind(raw)
        except (TypeError, ValueError):
            raise ConfigError(f'Invalid value for {key} in {source}: {raw!r}')
        self._values[key] = value
        self.sources[key] = source

    def __getattr__(self, name: str) -> Any:
        values = self.__dict__.get('_values')
        if values is not None and name in values:
            return values[name]
        raise AttributeError(name)

    def path(self, key: str) -> Path:
        """Resolve a directory/file setting against the project root"""
        return self.root_dir / self._values[key]

    @property
    def app_path(self) -> Path:
        return self.path('app_dir')

    @property
    def actions_path(self) -> Path:
        return self.path('actions_dir')

    @property
    def route_script_path(self) -> Path:
        return self.path('route_script')

    @property
    def server_path(self) -> Path:
        return self.path('server_dir')

    @property
    def bundle_path(self) -> Path:
        return self.path('bundle_dir')

    @property
    def routes_file(self) -> Path:
        return self.server_path / 'routes.json'

    @property
    def action_map_file(self) -> Path:
        return self.server_path / 'action_map.json'

    @property
    def env_file(self) -> Path:
        return self.root_dir / '.env'

    def command(self) -> List[str]:
        """Server command as an argv list"""
        return shlex.split(self.server_command, posix=(os.name != 'nt'))

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def relative(self, path: Path | str) -> str:
        """Path relative to the project root, for messages"""
        path = Path(path)
        try:
            return path.resolve().relative_to(self.root_dir).as_posix()
        except ValueError:
            return str(path)


# Global instance (lazy loaded)
_config = None


def get_config(root_dir: Path | str = '.') -> DevConfig:
    """Get the global dev configuration"""
    global _config
    if _config is None:
        _config = DevConfig(root_dir)
    return _config


def reload_config(root_dir: Path | str = '.') -> DevConfig:
    """Reload configuration from file and environment"""
    global _config
    _config = DevConfig(root_dir)
    return _config
