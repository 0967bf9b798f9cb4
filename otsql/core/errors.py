# Error taxonomy shared by the REPL handlers and the CLI.
from enum import Enum, auto


class ErrorCategory(Enum):
    USER_INPUT = auto()
    PARSE = auto()
    AUTHORIZATION = auto()
    BACKEND = auto()
    AUDIT = auto()
    RESOURCE = auto()
    CONFIG = auto()
    INTERNAL = auto()


class OtsqlException(Exception):
    category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(self, message: str, *, category: ErrorCategory | None = None):
        super().__init__(message)
        if category:
            self.category = category


class MetacommandParseError(OtsqlException):
    """The input looked like a directive but its arguments are malformed."""
    category = ErrorCategory.PARSE


class AuthorizationError(OtsqlException):
    category = ErrorCategory.AUTHORIZATION


class AuditError(OtsqlException):
    category = ErrorCategory.AUDIT


class ResourceError(OtsqlException):
    category = ErrorCategory.RESOURCE


class SnippetNotFound(ResourceError):
    def __init__(self, name: str):
        super().__init__(f"Snippet '{name}' not found")
        self.name = name


class VariableError(OtsqlException):
    category = ErrorCategory.USER_INPUT


class ConfigError(OtsqlException):
    category = ErrorCategory.CONFIG


__all__ = [
    'ErrorCategory', 'OtsqlException', 'MetacommandParseError', 'AuthorizationError',
    'AuditError', 'ResourceError', 'SnippetNotFound', 'VariableError', 'ConfigError',
]
