"""Handler registry and built-in handlers."""

from jobrpc.config import Settings
from jobrpc.handlers import builtin
from jobrpc.handlers.registry import (
    HandlerFn,
    HandlerNotFoundError,
    HandlerRegistry,
    InvalidHandlerPathError,
    normalize_handler_path,
)

__all__ = [
    "HandlerFn",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "InvalidHandlerPathError",
    "build_registry",
    "normalize_handler_path",
]


def build_registry(settings: Settings) -> HandlerRegistry:
    """Registry with built-ins plus the modules listed in settings."""

    registry = HandlerRegistry(root=settings.handlers.root)
    builtin.register(registry)
    registry.load_modules(settings.handlers.modules)
    return registry
