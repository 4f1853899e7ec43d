"""Step runners: the engine's execution backends."""

from choreo_pipeline.runners.base import StepOutcome, StepRequest, StepRunner
from choreo_pipeline.runners.builtins import (
    BuiltinAlreadyRegisteredError,
    BuiltinNotFoundError,
    clear_builtins,
    get_builtin,
    has_builtin,
    list_builtins,
    register_builtin,
)
from choreo_pipeline.runners.http import HttpRunner
from choreo_pipeline.runners.local import LocalRunner

__all__ = [
    "StepRequest",
    "StepOutcome",
    "StepRunner",
    "LocalRunner",
    "HttpRunner",
    "register_builtin",
    "get_builtin",
    "has_builtin",
    "list_builtins",
    "clear_builtins",
    "BuiltinAlreadyRegisteredError",
    "BuiltinNotFoundError",
]
