"""Built-in diagnostic handlers, useful to smoke-test a deployed daemon."""

from __future__ import annotations

import asyncio
from typing import Any

from jobrpc.handlers.registry import HandlerRegistry

MAX_SLEEP_SECONDS = 600.0


def echo(args: dict[str, Any]) -> dict[str, Any]:
    return dict(args)


async def sleep(args: dict[str, Any]) -> dict[str, Any]:
    """Wait ``args["seconds"]`` and return the value, capped at ten minutes."""

    seconds = float(args.get("seconds", 1.0))
    if seconds < 0:
        raise ValueError("seconds must be >= 0")
    seconds = min(seconds, MAX_SLEEP_SECONDS)
    await asyncio.sleep(seconds)
    return {"slept": seconds}


def fail(args: dict[str, Any]) -> None:
    raise RuntimeError(str(args.get("message") or "Requested failure"))


def register(registry: HandlerRegistry) -> None:
    registry.register("builtin/echo", echo)
    registry.register("builtin/sleep", sleep)
    registry.register("builtin/fail", fail)
