from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from gamehub.errors import ValidationError


@dataclass(frozen=True, slots=True)
class ValidationContext:
    """Inputs available to validators.

    Keep this tight and serializable-ish so we can safely log it.
    """

    game_id: str
    action: str
    data: Mapping[str, Any]


class ActionValidator(ABC):
    """A small, composable validation unit for an incoming action."""

    @abstractmethod
    def validate(self, *, ctx: ValidationContext) -> None:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class KnownActionValidator(ActionValidator):
    allowed_actions: frozenset[str]

    def validate(self, *, ctx: ValidationContext) -> None:
        if ctx.action not in self.allowed_actions:
            allowed = ", ".join(sorted(self.allowed_actions))
            raise ValidationError(f"Action '{ctx.action}' is not valid. Available actions: {allowed}")


@dataclass(frozen=True, slots=True)
class RequiredFieldsValidator(ActionValidator):
    fields: tuple[str, ...]

    def validate(self, *, ctx: ValidationContext) -> None:
        missing = [f for f in self.fields if ctx.data.get(f) in (None, "")]
        if missing:
            raise ValidationError(f"Action '{ctx.action}' requires: {', '.join(missing)}")


@dataclass(frozen=True, slots=True)
class AnyOfFieldsValidator(ActionValidator):
    """At least one group of fields must be fully present (e.g. `selector` or `x`+`y`)."""

    groups: tuple[tuple[str, ...], ...]

    def validate(self, *, ctx: ValidationContext) -> None:
        for group in self.groups:
            if all(ctx.data.get(f) not in (None, "") for f in group):
                return
        options = " or ".join("+".join(g) for g in self.groups)
        raise ValidationError(f"Action '{ctx.action}' requires {options}")


@dataclass(frozen=True, slots=True)
class NumericFieldsValidator(ActionValidator):
    """Optional fields that, when present, must be numbers within bounds."""

    fields: tuple[str, ...]
    minimum: float | None = None
    maximum: float | None = None

    def validate(self, *, ctx: ValidationContext) -> None:
        for name in self.fields:
            if name not in ctx.data or ctx.data[name] is None:
                continue
            value = ctx.data[name]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"Field '{name}' must be a number")
            if self.minimum is not None and value < self.minimum:
                raise ValidationError(f"Field '{name}' must be >= {self.minimum}")
            if self.maximum is not None and value > self.maximum:
                raise ValidationError(f"Field '{name}' must be <= {self.maximum}")


@dataclass(frozen=True, slots=True)
class ValidatorPipeline:
    validators: tuple[ActionValidator, ...]

    def validate(self, *, ctx: ValidationContext) -> None:
        for v in self.validators:
            v.validate(ctx=ctx)


def build_pipelines(
    *,
    actions: frozenset[str],
    per_action: Mapping[str, tuple[ActionValidator, ...]] | None = None,
) -> dict[str, ValidatorPipeline]:
    """One pipeline per known action: the vocabulary check first, then action-specific rules."""

    known = KnownActionValidator(allowed_actions=actions)
    extra = per_action or {}
    return {a: ValidatorPipeline(validators=(known, *extra.get(a, ()))) for a in actions}


def pipeline_for_action(pipelines: Mapping[str, ValidatorPipeline], action: str) -> ValidatorPipeline:
    pipe = pipelines.get(action)
    if pipe is None:
        allowed = ", ".join(sorted(pipelines))
        raise ValidationError(f"Action '{action}' is not valid. Available actions: {allowed}")
    return pipe
