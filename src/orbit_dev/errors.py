"""
Exceptions for the dev tools

Build-time errors carry DiagnosticRecords so they can be rendered without
re-parsing messages. None of them escape the build pipeline: it turns them
into a BuildFailure.
"""

from typing import List, Sequence

from .diagnostics import DiagnosticRecord


class OrbitError(Exception):
    """Base exception for dev tool errors"""
    pass


class ConfigError(OrbitError):
    """Raised when orbit.tsv or an ORBIT_* variable holds a bad value"""
    pass


class DiagnosticError(OrbitError):
    """Base for errors that carry renderable diagnostics"""

    def __init__(self, message: str, diagnostics: Sequence[DiagnosticRecord] = ()):
        super().__init__(message)
        self.diagnostics: List[DiagnosticRecord] = list(diagnostics)


class RouteDefinitionError(DiagnosticError):
    """Raised when the route script can't be loaded or defines no app"""
    pass


class BundleError(DiagnosticError):
    """Raised when an action can't be bundled (syntax error, unresolved import)"""
    pass
