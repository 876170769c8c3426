"""Registry of step actions.

An action is an ``async`` callable taking a :class:`~provisio.contracts.StepContext`
and returning the step output (a dict of non-secret values, or ``None``).
Actions are looked up by the names used in workflow definitions.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional

from ..contracts import StepContext

ActionFunc = Callable[[StepContext], Awaitable[Optional[Dict[str, Any]]]]

ACTIONS: Dict[str, ActionFunc] = {}


def action(name: str) -> Callable[[ActionFunc], ActionFunc]:
    """Register the decorated coroutine function under ``name``."""

    def decorator(func: ActionFunc) -> ActionFunc:
        if name in ACTIONS:
            raise ValueError(f"action '{name}' is already registered")
        ACTIONS[name] = func
        return func

    return decorator


# Importing the modules registers their actions.
from . import apps, backup, checks, credentials, database, domain, files, mail, ssl  # noqa: E402,F401

__all__ = ["ACTIONS", "ActionFunc", "action"]
