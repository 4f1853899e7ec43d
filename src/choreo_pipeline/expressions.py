"""Resolution of {{...}} template expressions.

Supported reference classes, evaluated by prefix:
    VARIABLES.<NAME>, VARIABLES.<ORG|PROJECT|COMPONENT|DT>.<NAME>
    SECRETS.<NAME>,   SECRETS.<ORG|PROJECT|COMPONENT|DT>.<NAME>
    steps.<name>.outputs.parameters.<key>
    inputs.parameters.<key>
    arguments.parameters.<key>
    workflow.<field>

Variables and secrets without a hierarchy segment are looked up at
component scope. Values of global arguments and variables may themselves
contain expressions and are resolved recursively; secrets, step outputs,
inputs and workflow fields are taken literally.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import yaml

from choreo_pipeline.errors import CyclicReferenceError, UnresolvedReferenceError
from choreo_pipeline.outputs import OutputStore

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
STEP_OUTPUT_PATTERN = re.compile(r"^steps\.([A-Za-z][A-Za-z0-9_-]*)\.outputs\.parameters\.([A-Za-z0-9_.-]+)$")
PARAMETER_PATTERN = re.compile(r"^(inputs|arguments)\.parameters\.([A-Za-z0-9_.-]+)$")


class Scope(str, Enum):
    """Hierarchy level a variable or secret is defined at."""

    ORG = "ORG"
    PROJECT = "PROJECT"
    COMPONENT = "COMPONENT"
    DT = "DT"


DEFAULT_SCOPE = Scope.COMPONENT


class ScopeAccessor(Protocol):
    """Read-only access to variables or secrets managed outside the engine."""

    def lookup(self, scope: Scope, name: str) -> str | None: ...


class MappingAccessor:
    """In-memory accessor keyed by scope.

    Example:
        MappingAccessor({"COMPONENT": {"LOG_LEVEL": "info"}, "ORG": {"REGION": "eu"}})
    """

    def __init__(self, values: Mapping[Scope | str, Mapping[str, Any]] | None = None) -> None:
        self._values: dict[Scope, dict[str, str]] = {scope: {} for scope in Scope}
        for scope, entries in (values or {}).items():
            key = Scope(scope.upper() if isinstance(scope, str) else scope)
            self._values[key].update({k: str(v) for k, v in entries.items()})

    @classmethod
    def from_yaml(cls, path: str | Path) -> MappingAccessor:
        """Load ``{ORG: {...}, PROJECT: {...}, COMPONENT: {...}, DT: {...}}`` from YAML.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the file is not a mapping of scopes.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Variables file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
            raise ValueError(f"Variables file must map scopes to objects: {path}")

        try:
            return cls(data)
        except ValueError as e:
            raise ValueError(f"Unknown scope in {path}: {e}") from e

    def lookup(self, scope: Scope, name: str) -> str | None:
        return self._values[scope].get(name)


@dataclass(frozen=True)
class ResolutionContext:
    """Scope for resolving one step's expressions.

    Attributes:
        arguments: Global arguments by name.
        inputs: Bound inputs of the current template.
        workflow: Engine-assigned identifiers (uid, name, ...).
        step_name: Step whose expressions are being resolved.
    """

    arguments: Mapping[str, str] = field(default_factory=dict)
    inputs: Mapping[str, str] = field(default_factory=dict)
    workflow: Mapping[str, str] = field(default_factory=dict)
    step_name: str | None = None

    def with_inputs(self, inputs: Mapping[str, str]) -> ResolutionContext:
        return ResolutionContext(
            arguments=self.arguments,
            inputs=dict(inputs),
            workflow=self.workflow,
            step_name=self.step_name,
        )


def find_references(text: str | None) -> list[str]:
    """All {{...}} tokens in a string, in order of appearance."""
    if not text:
        return []
    return [m.group(1) for m in PLACEHOLDER_PATTERN.finditer(text)]


def find_step_references(text: str | None) -> set[str]:
    """Names of steps whose outputs are referenced in a string."""
    names: set[str] = set()
    for token in find_references(text):
        match = STEP_OUTPUT_PATTERN.match(token)
        if match:
            names.add(match.group(1))
    return names


def has_references(text: str | None) -> bool:
    return bool(text) and PLACEHOLDER_PATTERN.search(text) is not None


class ExpressionResolver:
    """Resolves {{...}} placeholders against a scope chain.

    Resolution is a pure function of (text, context, accessors, output
    store contents): the same input yields the same output.

    Args:
        variables: Accessor for VARIABLES.* lookups.
        secrets: Accessor for SECRETS.* lookups.
        outputs: Store of prior steps' outputs.
    """

    def __init__(
        self,
        *,
        variables: ScopeAccessor | None = None,
        secrets: ScopeAccessor | None = None,
        outputs: OutputStore | None = None,
    ) -> None:
        self.variables = variables or MappingAccessor()
        self.secrets = secrets or MappingAccessor()
        self.outputs = outputs if outputs is not None else OutputStore()

    def resolve(self, text: str, context: ResolutionContext) -> str:
        """Resolve every placeholder in ``text``.

        Raises:
            UnresolvedReferenceError: If a token has no value.
            CyclicReferenceError: If a token's value refers back to itself.
        """
        return self._resolve(text, context, ())

    def resolve_optional(self, text: str | None, context: ResolutionContext) -> str | None:
        return None if text is None else self.resolve(text, context)

    def resolve_token(self, token: str, context: ResolutionContext) -> str:
        """Resolve a single bare token (without braces)."""
        return self._resolve_token(token.strip(), context, ())

    def _resolve(self, text: str, context: ResolutionContext, stack: tuple[str, ...]) -> str:
        if "{{" not in text:
            return text

        def replace(match: re.Match[str]) -> str:
            return self._resolve_token(match.group(1), context, stack)

        return PLACEHOLDER_PATTERN.sub(replace, text)

    def _resolve_token(self, token: str, context: ResolutionContext, stack: tuple[str, ...]) -> str:
        if token in stack:
            raise CyclicReferenceError([*stack, token])

        value, recursive = self._lookup(token, context)
        if recursive and has_references(value):
            value = self._resolve(value, context, (*stack, token))
        return value

    def _lookup(self, token: str, context: ResolutionContext) -> tuple[str, bool]:
        """Return (value, resolve_recursively) for a token."""
        if not token:
            raise UnresolvedReferenceError(token, "empty expression")

        head = token.split(".", 1)[0]

        if head in ("VARIABLES", "SECRETS"):
            scope, name = _split_scoped(token)
            accessor = self.variables if head == "VARIABLES" else self.secrets
            value = accessor.lookup(scope, name)
            if value is None:
                label = "variable" if head == "VARIABLES" else "secret"
                raise UnresolvedReferenceError(token, f"no {label} '{name}' at {scope.value} scope")
            return value, head == "VARIABLES"

        if head == "steps":
            match = STEP_OUTPUT_PATTERN.match(token)
            if not match:
                raise UnresolvedReferenceError(token, "expected steps.<name>.outputs.parameters.<key>")
            step_name, key = match.groups()
            record = self.outputs.get(step_name)
            if record is None:
                raise UnresolvedReferenceError(token, f"step '{step_name}' has no recorded outputs")
            value = record.values.get(key)
            if value is None:
                raise UnresolvedReferenceError(token, f"step '{step_name}' has no output '{key}'")
            return value, False

        if head in ("inputs", "arguments"):
            match = PARAMETER_PATTERN.match(token)
            if not match:
                raise UnresolvedReferenceError(token, f"expected {head}.parameters.<key>")
            key = match.group(2)
            source = context.inputs if head == "inputs" else context.arguments
            value = source.get(key)
            if value is None:
                label = "input" if head == "inputs" else "argument"
                raise UnresolvedReferenceError(token, f"no {label} '{key}'")
            return value, head == "arguments"

        if head == "workflow":
            key = token[len("workflow.") :]
            value = context.workflow.get(key)
            if value is None:
                raise UnresolvedReferenceError(token, f"unknown workflow field '{key}'")
            return value, False

        raise UnresolvedReferenceError(token, "unknown reference")


def _split_scoped(token: str) -> tuple[Scope, str]:
    parts = token.split(".")
    if len(parts) == 2 and parts[1]:
        return DEFAULT_SCOPE, parts[1]
    if len(parts) == 3 and parts[1] in Scope.__members__ and parts[2]:
        return Scope(parts[1]), parts[2]
    raise UnresolvedReferenceError(
        token,
        f"expected {parts[0]}.<NAME> or {parts[0]}.<ORG|PROJECT|COMPONENT|DT>.<NAME>",
    )
