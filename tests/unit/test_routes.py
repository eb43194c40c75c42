"""
Unit tests for route registration and matching
"""

import pytest

from orbit_dev.routes import RouteTable, ServerConfig, create_app, match_pattern


class TestRegistration:
    """Test what a route script can register"""

    def test_reply_types(self):
        """Should store dict/list replies as json and anything else as text"""
        app = create_app()
        app.get('/').reply({'status': 'ok'})
        app.get('/list').reply([1, 2])
        app.get('/hello').reply('Hello')

        routes = app.build().to_artifact()['routes']

        assert routes['GET:/'] == {'type': 'json', 'value': {'status': 'ok'}}
        assert routes['GET:/list']['type'] == 'json'
        assert routes['GET:/hello'] == {'type': 'text', 'value': 'Hello'}

    def test_same_key_last_wins(self):
        """Should overwrite a static route registered twice"""
        app = create_app()
        app.post('/lg').action('login')
        app.post('/lg').action('login_v2')

        assert app.build().dispatch_map() == {'POST:/lg': 'login_v2'}

    def test_dispatch_map_has_static_actions_only(self):
        """Should map only static action routes"""
        app = create_app()
        app.get('/').reply('home')
        app.post('/lg').action('login')
        app.get('/users/:id').action('user')

        assert app.build().dispatch_map() == {'POST:/lg': 'login'}

    def test_method_names(self):
        """Should register every helper under its HTTP method"""
        app = create_app()
        app.put('/a').action('a')
        app.delete('/b').action('b')
        app.patch('/c').action('c')
        app.route('get', '/d').action('d')

        assert set(app.build().dispatch_map()) == {'PUT:/a', 'DELETE:/b', 'PATCH:/c', 'GET:/d'}

    def test_unknown_method_rejected(self):
        """Should raise for methods the server doesn't know"""
        with pytest.raises(ValueError):
            create_app().route('FETCH', '/x')

    def test_action_names_in_order(self):
        """Should list referenced actions once, static then dynamic"""
        app = create_app()
        app.post('/lg').action('login')
        app.get('/users/:id').action('user')
        app.post('/login').action('login')

        assert app.build().action_names() == ['login', 'user']


class TestServerConfig:
    """Test start() and the __config artifact"""

    def test_defaults(self):
        """Should default to port 3000 and omit threads"""
        table = create_app().build()

        assert table.to_artifact()['__config'] == {'port': 3000, 'stack_mb': 8}
        assert table.message == ''

    def test_start_records_config(self):
        """Should record port, message, threads and stack size"""
        app = create_app()
        app.start(5100, 'ready', threads=4, stack_mb=16)
        table = app.build()

        assert app.started
        assert table.config == ServerConfig(port=5100, threads=4, stack_mb=16)
        assert table.to_artifact()['__config'] == {'port': 5100, 'threads': 4, 'stack_mb': 16}
        assert table.message == 'ready'


class TestDynamicRoutes:
    """Test dynamic route flattening and matching"""

    def test_flattened_grouped_by_method(self):
        """Should group dynamic routes by method, in first-registration order"""
        app = create_app()
        app.get('/a/:x').action('a')
        app.post('/b/:y').action('b')
        app.get('/c/:z').action('c')

        dynamic = app.build().to_artifact()['__dynamic_routes']

        assert dynamic == [
            {'method': 'GET', 'pattern': '/a/:x', 'action': 'a'},
            {'method': 'GET', 'pattern': '/c/:z', 'action': 'c'},
            {'method': 'POST', 'pattern': '/b/:y', 'action': 'b'},
        ]

    def test_number_param(self):
        """Should match only integer segments for :name<number>"""
        assert match_pattern('/users/:id<number>', '/users/42') == {'id': '42'}
        assert match_pattern('/users/:id<number>', '/users/ada') is None

    def test_string_param(self):
        """Should capture any segment for :name"""
        assert match_pattern('/users/:name/posts', '/users/ada/posts') == {'name': 'ada'}

    def test_segment_count_must_match(self):
        """Should not match paths with a different number of segments"""
        assert match_pattern('/users/:id', '/users/1/posts') is None

    def test_trailing_slash_ignored(self):
        """Should trim leading and trailing slashes before matching"""
        assert match_pattern('/users/:id/', 'users/7') == {'id': '7'}

    def test_unknown_type_never_matches(self):
        """Should never match a parameter type it doesn't know"""
        assert match_pattern('/files/:id<uuid>', '/files/abc') is None

    def test_static_beats_dynamic(self):
        """Should prefer an exact static route"""
        app = create_app()
        app.get('/users/:id').action('user')
        app.get('/users/me').action('me')

        entry, params = app.build().resolve('GET', '/users/me')

        assert entry.value == 'me'
        assert params == {}

    def test_first_registered_match_wins(self):
        """Should use registration order, not specificity, between dynamic routes"""
        app = create_app()
        app.get('/users/:name').action('by_name')
        app.get('/users/:id<number>').action('by_id')

        entry, params = app.build().resolve('GET', '/users/42')

        assert entry.value == 'by_name'
        assert params == {'name': '42'}

    def test_method_must_match(self):
        """Should not resolve a dynamic route registered for another method"""
        app = create_app()
        app.get('/users/:id').action('user')

        assert app.build().resolve('POST', '/users/1') is None

    def test_empty_table(self):
        """Should resolve nothing on an empty table"""
        assert RouteTable().resolve('GET', '/') is None
