"""
Core module - Configuration, error taxonomy and observability
"""

from .config import Config
from .errors import (
    ErrorKind,
    GenerationError,
    ValidationError,
    RateLimited,
    TransientBackendError,
    TransportError,
    JobTimeout,
    UnrecoverableBackendError,
    ConfigurationError,
    classify_error,
)

__all__ = [
    'Config',
    'ErrorKind',
    'GenerationError',
    'ValidationError',
    'RateLimited',
    'TransientBackendError',
    'TransportError',
    'JobTimeout',
    'UnrecoverableBackendError',
    'ConfigurationError',
    'classify_error',
]
