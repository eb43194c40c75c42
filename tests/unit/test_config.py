"""
Unit tests for DevConfig

Precedence: defaults < orbit.tsv < ORBIT_* environment < explicit overrides
"""

import pytest

from orbit_dev import config as config_module
from orbit_dev.config import DevConfig, get_config, reload_config
from orbit_dev.errors import ConfigError


@pytest.fixture
def config_file(tmp_path):
    """Create an orbit.tsv with a comment and two settings"""
    path = tmp_path / 'orbit.tsv'
    with open(path, 'w') as f:
        f.write('# key\tvalue\n')
        f.write('server_command\tcargo run --release\n')
        f.write('debounce_ms\t250\n')
        f.write('\n')
        f.write('not_a_setting\twhatever\n')
    return path


class TestDefaults:
    """Test values without file or environment"""

    def test_defaults(self, tmp_path):
        """Should fall back to the built-in defaults"""
        config = DevConfig(tmp_path, environ={})

        assert config.server_command == 'cargo run --quiet'
        assert config.readiness_marker == 'Orbit server running'
        assert config.default_port == 3000
        assert config.debounce_ms == 300
        assert config.stability_ms == 500
        assert config.max_attempts == 3
        assert config.port_retry_delay_ms == 1000
        assert config.crash_retry_delay_ms == 2000
        assert config.min_viable_runtime_s == 15.0
        assert config.sources == {}

    def test_paths(self, tmp_path):
        """Should resolve paths against the project root"""
        config = DevConfig(tmp_path, environ={})
        root = tmp_path.resolve()

        assert config.app_path == root / 'app'
        assert config.actions_path == root / 'app' / 'actions'
        assert config.route_script_path == root / 'app' / 'app.py'
        assert config.bundle_path == root / 'server' / 'src' / 'actions'
        assert config.routes_file == root / 'server' / 'routes.json'
        assert config.action_map_file == root / 'server' / 'action_map.json'
        assert config.env_file == root / '.env'

    def test_unknown_attribute(self, tmp_path):
        """Should raise AttributeError for unknown settings"""
        with pytest.raises(AttributeError):
            DevConfig(tmp_path, environ={}).no_such_setting


class TestSources:
    """Test file, environment and override precedence"""

    def test_file_values(self, tmp_path, config_file):
        """Should read settings from orbit.tsv, skipping comments and unknown keys"""
        config = DevConfig(tmp_path, environ={})

        assert config.server_command == 'cargo run --release'
        assert config.debounce_ms == 250
        assert config.sources == {'server_command': 'orbit.tsv', 'debounce_ms': 'orbit.tsv'}

    def test_environment_beats_file(self, tmp_path, config_file):
        """Should let ORBIT_* variables override the file"""
        config = DevConfig(tmp_path, environ={'ORBIT_DEBOUNCE_MS': '100'})

        assert config.debounce_ms == 100
        assert config.sources['debounce_ms'] == 'ORBIT_DEBOUNCE_MS'

    def test_overrides_beat_environment(self, tmp_path):
        """Should let explicit overrides win"""
        config = DevConfig(tmp_path, overrides={'max_attempts': 1}, environ={'ORBIT_MAX_ATTEMPTS': '5'})

        assert config.max_attempts == 1

    def test_invalid_value(self, tmp_path):
        """Should name the key and source of a malformed value"""
        with pytest.raises(ConfigError, match='max_attempts in ORBIT_MAX_ATTEMPTS'):
            DevConfig(tmp_path, environ={'ORBIT_MAX_ATTEMPTS': 'three'})

    def test_invalid_file_value(self, tmp_path):
        """Should reject malformed numbers in orbit.tsv"""
        (tmp_path / 'orbit.tsv').write_text('stop_timeout_s\tsoon\n')

        with pytest.raises(ConfigError, match='orbit.tsv'):
            DevConfig(tmp_path, environ={})

    def test_unknown_override(self, tmp_path):
        """Should reject overrides for settings that don't exist"""
        with pytest.raises(ConfigError, match='Unknown setting'):
            DevConfig(tmp_path, overrides={'colour': 'blue'}, environ={})


class TestHelpers:
    """Test derived values"""

    def test_command_split(self, tmp_path):
        """Should split the server command like a shell"""
        config = DevConfig(tmp_path, overrides={'server_command': 'cargo run -- --name "my app"'}, environ={})

        assert config.command() == ['cargo', 'run', '--', '--name', 'my app']

    def test_relative(self, tmp_path):
        """Should show project paths relative to the root"""
        config = DevConfig(tmp_path, environ={})

        assert config.relative(config.route_script_path) == 'app/app.py'

    def test_as_dict(self, tmp_path):
        """Should expose every setting"""
        values = DevConfig(tmp_path, environ={}).as_dict()

        assert values['bundle_extension'] == '.pybundle'
        assert 'stop_timeout_s' in values


class TestGlobalConfig:
    """Test the lazily created global config"""

    def test_get_and_reload(self, tmp_path, monkeypatch):
        """Should cache the config until reloaded"""
        monkeypatch.setattr(config_module, '_config', None)

        first = get_config(tmp_path)
        assert get_config(tmp_path) is first

        reloaded = reload_config(tmp_path)
        assert reloaded is not first
        assert get_config() is reloaded
