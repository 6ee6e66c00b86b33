# actions/__init__.py
from __future__ import annotations

from typing import Any, Callable, Dict, Optional

from ..executor import StepContext, StepOutcome

Action = Callable[[StepContext, Dict[str, Any]], StepOutcome]

_REGISTRY: Dict[str, Action] = {}


def action_key(uses: str) -> str:
    """
    Normalize a `uses:` reference to a registry key.

    "actions/upload-artifact@v4" -> "upload-artifact"
    """
    ref = uses.strip().split("@", 1)[0]
    return ref.rsplit("/", 1)[-1]


def register_action(name: str) -> Callable[[Action], Action]:
    def decorator(fn: Action) -> Action:
        _REGISTRY[action_key(name)] = fn
        return fn
    return decorator


def resolve_action(uses: str) -> Optional[Action]:
    return _REGISTRY.get(action_key(uses))


def registered_actions() -> list[str]:
    return sorted(_REGISTRY)


# built-ins register themselves on import
from . import artifacts, checkout  # noqa: E402,F401
