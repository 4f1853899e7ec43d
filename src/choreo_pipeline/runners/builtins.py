"""Handler registry for built-in (``choreo/``) templates.

Built-in templates are opaque to the engine. Runners that execute them
locally look up a handler here.

Usage:
    from choreo_pipeline.runners import StepOutcome, StepRequest, register_builtin

    @register_builtin("choreo/echo@v1")
    def handle_echo(request: StepRequest) -> StepOutcome:
        return StepOutcome(logs=request.parameters.get("message", ""))

A handler registered without a version (``choreo/echo``) serves every
version that has no exact registration.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, overload

if TYPE_CHECKING:
    from choreo_pipeline.runners.base import StepOutcome, StepRequest

# Type alias for built-in handler functions (sync or async)
BuiltinHandler = Callable[["StepRequest"], "StepOutcome | Awaitable[StepOutcome]"]

# The builtin registry - maps normalized references to handlers
_BUILTIN_REGISTRY: dict[str, BuiltinHandler] = {}


class BuiltinAlreadyRegisteredError(Exception):
    """Raised when attempting to register a built-in that already exists."""

    def __init__(self, reference: str) -> None:
        super().__init__(f"Built-in '{reference}' is already registered")
        self.reference = reference


class BuiltinNotFoundError(Exception):
    """Raised when no handler exists for a built-in reference."""

    def __init__(self, reference: str, available: list[str]) -> None:
        available_str = ", ".join(sorted(available)) if available else "(none)"
        super().__init__(f"Built-in '{reference}' has no handler. Available: {available_str}")
        self.reference = reference
        self.available = available


def normalize_reference(reference: str) -> str:
    """Normalize a built-in reference for registry lookup."""
    return reference.strip().lower()


@overload
def register_builtin(reference: str) -> Callable[[BuiltinHandler], BuiltinHandler]: ...


@overload
def register_builtin(
    reference: str,
    handler: BuiltinHandler,
    *,
    allow_override: bool = False,
) -> None: ...


def register_builtin(
    reference: str,
    handler: BuiltinHandler | None = None,
    *,
    allow_override: bool = False,
) -> Callable[[BuiltinHandler], BuiltinHandler] | None:
    """Register a built-in template handler.

    Can be used as a decorator or called directly.

    Args:
        reference: ``choreo/<name>@<version>`` or ``choreo/<name>``.
        handler: Optional handler function (if not using as decorator).
        allow_override: If True, allows replacing existing handlers.

    Raises:
        BuiltinAlreadyRegisteredError: If already registered and allow_override=False.
    """
    key = normalize_reference(reference)

    def _register(h: BuiltinHandler) -> BuiltinHandler:
        if key in _BUILTIN_REGISTRY and not allow_override:
            raise BuiltinAlreadyRegisteredError(reference)
        _BUILTIN_REGISTRY[key] = h
        return h

    if handler is None:
        return _register
    _register(handler)
    return None


def get_builtin(reference: str) -> BuiltinHandler:
    """Get the handler for a built-in reference.

    Tries the exact reference first, then the unversioned name.

    Raises:
        BuiltinNotFoundError: If no handler matches.
    """
    key = normalize_reference(reference)
    if key in _BUILTIN_REGISTRY:
        return _BUILTIN_REGISTRY[key]
    unversioned = key.split("@", 1)[0]
    if unversioned in _BUILTIN_REGISTRY:
        return _BUILTIN_REGISTRY[unversioned]
    raise BuiltinNotFoundError(reference, list_builtins())


def has_builtin(reference: str) -> bool:
    key = normalize_reference(reference)
    return key in _BUILTIN_REGISTRY or key.split("@", 1)[0] in _BUILTIN_REGISTRY


def list_builtins() -> list[str]:
    """Sorted list of registered built-in references."""
    return sorted(_BUILTIN_REGISTRY.keys())


def clear_builtins() -> None:
    """Clear all registered built-ins.

    Primarily used for testing to reset state between tests.
    """
    _BUILTIN_REGISTRY.clear()
