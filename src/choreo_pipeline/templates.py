"""Template registry.

Holds named template definitions (Choreo inline-script templates, Argo-style
script/containerSet templates, container templates) and resolves step
references to them.

Built-in templates live in the ``choreo/`` namespace. They have no local
definition: the registry only checks their ``choreo/<name>@<version>``
syntax and returns a BuiltinRef that the runner executes opaquely.

A template may delegate to one other template by name. Delegation is a
single indirection: chains longer than one level and self or mutual
references are rejected when the template is registered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from choreo_pipeline.errors import (
    DuplicateTemplateNameError,
    InvalidBuiltinReferenceError,
    TemplateDelegationDepthExceededError,
    TemplateNotFoundError,
)
from choreo_pipeline.models import (
    BuiltinRef,
    ContainerTemplateDefinition,
    EnvVar,
    Parameter,
    TemplateDefinition,
    VolumeMount,
    is_builtin_reference,
)

logger = logging.getLogger(__name__)


def resolve_builtin(ref: str, *, path: str | None = None) -> BuiltinRef:
    """Parse a ``choreo/`` reference.

    Raises:
        InvalidBuiltinReferenceError: If the syntax is not ``choreo/<name>@<version>``.
    """
    builtin = BuiltinRef.parse(ref)
    if builtin is None:
        raise InvalidBuiltinReferenceError(ref, path=path)
    return builtin


class TemplateRegistry:
    """Named template definitions for one pipeline."""

    def __init__(self) -> None:
        self._templates: dict[str, TemplateDefinition] = {}

    @classmethod
    def from_definitions(
        cls,
        templates: Iterable[TemplateDefinition] = (),
        container_templates: Iterable[ContainerTemplateDefinition] = (),
    ) -> TemplateRegistry:
        """Build a registry from template and container template definitions."""
        registry = cls()
        for template in templates:
            registry.register(template)
        for container_template in container_templates:
            registry.register(container_template)
        return registry

    def register(self, template: TemplateDefinition | ContainerTemplateDefinition) -> TemplateDefinition:
        """Register a template.

        Raises:
            DuplicateTemplateNameError: If the name is already registered.
            InvalidBuiltinReferenceError: If it delegates to a malformed choreo/ reference.
            TemplateDelegationDepthExceededError: On self reference, mutual
                reference, or a delegation chain longer than one level.
        """
        if isinstance(template, ContainerTemplateDefinition):
            template = template.as_template()

        name = template.name
        if name in self._templates:
            raise DuplicateTemplateNameError(name)

        if template.template is not None and is_builtin_reference(template.template):
            resolve_builtin(template.template, path=f"templates.{name}.template")

        delegate = template.delegate
        if delegate is not None:
            if delegate == name:
                raise TemplateDelegationDepthExceededError(name, [name, name])
            target = self._templates.get(delegate)
            if target is not None and target.delegate is not None:
                raise TemplateDelegationDepthExceededError(name, [name, delegate, target.delegate])
            for existing in self._templates.values():
                if existing.delegate == name:
                    raise TemplateDelegationDepthExceededError(
                        existing.name, [existing.name, name, delegate]
                    )

        self._templates[name] = template
        logger.debug(f"Registered template: {name}")
        return template

    def get(self, name: str) -> TemplateDefinition | None:
        """Raw (unmerged) definition by name."""
        return self._templates.get(name)

    def resolve(self, name: str, *, path: str | None = None) -> TemplateDefinition | BuiltinRef:
        """Resolve a template reference.

        Local templates that delegate are returned merged with their target.
        ``choreo/`` references are returned as BuiltinRef.

        Raises:
            TemplateNotFoundError: If no such template exists.
            InvalidBuiltinReferenceError: If a choreo/ reference is malformed.
        """
        if is_builtin_reference(name):
            return resolve_builtin(name, path=path)

        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFoundError(name, self.names(), path=path)

        delegate = template.delegate
        if delegate is None:
            return template

        target = self._templates.get(delegate)
        if target is None:
            raise TemplateNotFoundError(delegate, self.names(), path=f"templates.{name}.template")
        if target.delegate is not None:
            raise TemplateDelegationDepthExceededError(name, [name, delegate, target.delegate])
        return _merge(template, target)

    def validate(self) -> None:
        """Check that every delegation target exists."""
        for name in self._templates:
            self.resolve(name)

    def names(self) -> list[str]:
        return sorted(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __len__(self) -> int:
        return len(self._templates)


def _merge(template: TemplateDefinition, target: TemplateDefinition) -> TemplateDefinition:
    """Apply a delegating template's overrides on top of its target."""
    return TemplateDefinition(
        name=template.name,
        inline_script=target.inline_script,
        script=target.script,
        container_set=target.container_set,
        template=target.template,
        image=template.image or target.image,
        env=_merge_named(target.env, template.env),
        volume_mounts=_merge_named(target.volume_mounts, template.volume_mounts),
        resources=template.resources or target.resources,
        inputs={"parameters": _merge_named(target.inputs.parameters, template.inputs.parameters)},
        outputs={"parameters": _merge_named(target.outputs.parameters, template.outputs.parameters)},
    )


def _merge_named(
    base: list[EnvVar] | list[VolumeMount] | list[Parameter],
    override: list[EnvVar] | list[VolumeMount] | list[Parameter],
) -> list:
    merged = {item.name: item for item in base}
    merged.update({item.name: item for item in override})
    return list(merged.values())
