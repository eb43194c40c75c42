"""
orbit-dev: development tooling for Orbit apps.

An Orbit app is a route script plus a directory of action scripts, served
by a compiled Orbit server. This package turns the sources into what the
server loads and keeps the server running while you work:

- Build: bundle every action into one self-contained file, run the route
  script, write routes.json and action_map.json (all or nothing)
- Dev loop: watch app/, rebuild, restart the server, retry port conflicts
  and early crashes, render errors as readable panels

Example (app/app.py):
    >>> from orbit_dev.routes import create_app
    >>>
    >>> app = create_app()
    >>> app.get('/').reply({'status': 'ok'})
    >>> app.post('/login').action('login')
    >>> app.start(5100, 'Listening on 5100')

Then:
    orbit build    # one-shot
    orbit dev      # watch + rebuild + supervise
"""

__version__ = "0.1.0"

from .config import DevConfig, get_config, reload_config
from .pipeline import BuildFailure, BuildPipeline, BuildSuccess, build
from .routes import RouteTable, create_app

__all__ = [
    "__version__",
    "DevConfig",
    "get_config",
    "reload_config",
    "BuildPipeline",
    "BuildSuccess",
    "BuildFailure",
    "build",
    "RouteTable",
    "create_app",
]
