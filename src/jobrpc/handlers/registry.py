"""Named handler registry with a fail-closed lookup."""

from __future__ import annotations

import importlib
import logging
import posixpath
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

HandlerFn = Callable[[dict[str, Any]], Any | Awaitable[Any]]

DEFAULT_HANDLER_ROOT = "handlers"


class InvalidHandlerPathError(ValueError):
    """Handler path is empty, absolute, or escapes the allowed root."""

    def __init__(self, handler_path: str) -> None:
        super().__init__(f'Invalid handler path: "{handler_path}"')
        self.handler_path = handler_path


class HandlerNotFoundError(LookupError):
    """No handler is registered under the requested name."""

    def __init__(self, handler_path: str) -> None:
        super().__init__(f'Handler not found: "{handler_path}"')
        self.handler_path = handler_path


def normalize_handler_path(handler_path: str, *, root: str = DEFAULT_HANDLER_ROOT) -> str:
    """Resolve ``handler_path`` under ``root`` and return the root-relative name.

    Leading ``<root>/`` is accepted and stripped, so ``handlers/ai/summary`` and
    ``ai/summary`` name the same handler. Anything that normalizes outside the
    root raises ``InvalidHandlerPathError``.
    """

    raw = handler_path.strip() if isinstance(handler_path, str) else ""
    if not raw or "\\" in raw or "\x00" in raw or raw.startswith("/"):
        raise InvalidHandlerPathError(str(handler_path))

    base = posixpath.normpath("/" + root.strip("/"))
    full = posixpath.normpath(posixpath.join(base, raw))
    if full.startswith(base + "/"):
        relative = full[len(base) + 1 :]
        if relative.startswith(root.strip("/") + "/"):
            relative = relative[len(root.strip("/")) + 1 :]
        if relative:
            return relative
    raise InvalidHandlerPathError(handler_path)


class HandlerRegistry:
    """Mapping from handler name to callable, populated at startup."""

    def __init__(self, *, root: str = DEFAULT_HANDLER_ROOT) -> None:
        self.root = root
        self._handlers: dict[str, HandlerFn] = {}

    def register(
        self,
        name: str,
        handler: HandlerFn | None = None,
    ) -> Callable[[HandlerFn], HandlerFn] | HandlerFn:
        """Register ``handler`` under ``name``; usable as a decorator."""

        normalized = normalize_handler_path(name, root=self.root)

        def _decorator(fn: HandlerFn) -> HandlerFn:
            if not callable(fn):
                raise TypeError(f"Handler {normalized!r} is not callable.")
            if normalized in self._handlers and self._handlers[normalized] is not fn:
                raise ValueError(f"Handler already registered: {normalized!r}")
            self._handlers[normalized] = fn
            return fn

        if handler is not None:
            return _decorator(handler)
        return _decorator

    def normalize(self, handler_path: str) -> str:
        return normalize_handler_path(handler_path, root=self.root)

    def resolve(self, handler_path: str) -> HandlerFn:
        """Return the handler for ``handler_path`` or raise; never loads code."""

        normalized = self.normalize(handler_path)
        handler = self._handlers.get(normalized)
        if handler is None:
            raise HandlerNotFoundError(handler_path)
        return handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, handler_path: object) -> bool:
        if not isinstance(handler_path, str):
            return False
        try:
            return self.normalize(handler_path) in self._handlers
        except InvalidHandlerPathError:
            return False

    def __len__(self) -> int:
        return len(self._handlers)

    def load_modules(self, modules: Iterable[str]) -> None:
        """Import handler modules once and let each ``register(registry)`` itself."""

        for module_name in modules:
            module = importlib.import_module(module_name)
            register = getattr(module, "register", None)
            if not callable(register):
                raise RuntimeError(
                    f"Handler module {module_name!r} has no register(registry) function.",
                )
            before = len(self._handlers)
            register(self)
            logger.info(
                "Loaded handler module %s (%d handler(s))",
                module_name,
                len(self._handlers) - before,
            )
