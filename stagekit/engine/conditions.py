"""Stage guards and their evaluation.

Guards are small frozen trees. Evaluation is pure and short-circuiting: `AllOf`
stops at the first false member and `AnyOf` at the first true one, so later
members may safely reference context that only exists on some runs.
"""

from __future__ import annotations

import logging
import re
import warnings
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Callable, Protocol, TypeAlias

from stagekit.errors import DefinitionError, GuardEvaluationWarning

_LOGGER = logging.getLogger(__name__)


class GuardContext(Protocol):
    branch: str | None
    tag: str | None
    change_request: bool
    parameters: Mapping[str, Any]
    environment: Mapping[str, str]


@dataclass(frozen=True)
class BranchEquals:
    value: str


@dataclass(frozen=True)
class BranchMatches:
    pattern: str

    def __post_init__(self) -> None:
        try:
            re.compile(self.pattern)
        except re.error as exc:
            raise DefinitionError(f"Invalid branch pattern {self.pattern!r}: {exc}") from exc


@dataclass(frozen=True)
class TagMatches:
    pattern: str = ".*"

    def __post_init__(self) -> None:
        try:
            re.compile(self.pattern)
        except re.error as exc:
            raise DefinitionError(f"Invalid tag pattern {self.pattern!r}: {exc}") from exc


@dataclass(frozen=True)
class ParamEquals:
    name: str
    value: bool | str


@dataclass(frozen=True)
class EnvEquals:
    name: str
    value: str


@dataclass(frozen=True)
class ChangeRequest:
    expected: bool = True


@dataclass(frozen=True)
class Expression:
    """Programmatic guard; `label` names it in logs."""

    fn: Callable[[GuardContext], bool]
    label: str = "expression"


@dataclass(frozen=True)
class AllOf:
    guards: tuple["Guard", ...]


@dataclass(frozen=True)
class AnyOf:
    guards: tuple["Guard", ...]


@dataclass(frozen=True)
class Not:
    guard: "Guard"


Guard: TypeAlias = (
    BranchEquals
    | BranchMatches
    | TagMatches
    | ParamEquals
    | EnvEquals
    | ChangeRequest
    | Expression
    | AllOf
    | AnyOf
    | Not
)


def _warn(message: str, logger: logging.Logger | None) -> None:
    warning = GuardEvaluationWarning(message)
    (logger or _LOGGER).warning("Guard evaluation: %s", message)
    warnings.warn(warning, stacklevel=3)


def _param_matches(actual: Any, expected: bool | str) -> bool:
    if isinstance(expected, bool):
        if isinstance(actual, bool):
            return actual is expected
        return str(actual).strip().lower() == ("true" if expected else "false")
    if isinstance(actual, bool):
        return ("true" if actual else "false") == str(expected).strip().lower()
    return str(actual) == str(expected)


def evaluate_guard(
    guard: Guard | None,
    ctx: GuardContext,
    *,
    logger: logging.Logger | None = None,
) -> bool:
    """Decide whether a guarded stage runs. `None` means unguarded."""

    if guard is None:
        return True

    if isinstance(guard, AllOf):
        for member in guard.guards:
            if not evaluate_guard(member, ctx, logger=logger):
                return False
        return True

    if isinstance(guard, AnyOf):
        for member in guard.guards:
            if evaluate_guard(member, ctx, logger=logger):
                return True
        return False

    if isinstance(guard, Not):
        return not evaluate_guard(guard.guard, ctx, logger=logger)

    if isinstance(guard, BranchEquals):
        return ctx.branch is not None and ctx.branch == guard.value

    if isinstance(guard, BranchMatches):
        if ctx.branch is None:
            return False
        return re.fullmatch(guard.pattern, ctx.branch) is not None

    if isinstance(guard, TagMatches):
        if ctx.tag is None:
            return False
        return re.fullmatch(guard.pattern, ctx.tag) is not None

    if isinstance(guard, ChangeRequest):
        return bool(ctx.change_request) is guard.expected

    if isinstance(guard, ParamEquals):
        if guard.name not in ctx.parameters:
            _warn(f"undefined parameter {guard.name!r}; treating guard as false", logger)
            return False
        return _param_matches(ctx.parameters[guard.name], guard.value)

    if isinstance(guard, EnvEquals):
        if guard.name not in ctx.environment:
            return False
        return ctx.environment[guard.name] == guard.value

    if isinstance(guard, Expression):
        try:
            return bool(guard.fn(ctx))
        except Exception as exc:  # noqa: BLE001
            _warn(f"{guard.label} raised {type(exc).__name__}: {exc}; treating guard as false", logger)
            return False

    raise TypeError(f"Unsupported guard type: {type(guard).__name__}")


def describe_guard(guard: Guard | None) -> str:
    if guard is None:
        return "<always>"
    if isinstance(guard, AllOf):
        return "all_of(" + ", ".join(describe_guard(g) for g in guard.guards) + ")"
    if isinstance(guard, AnyOf):
        return "any_of(" + ", ".join(describe_guard(g) for g in guard.guards) + ")"
    if isinstance(guard, Not):
        return f"not({describe_guard(guard.guard)})"
    if isinstance(guard, BranchEquals):
        return f"branch == {guard.value!r}"
    if isinstance(guard, BranchMatches):
        return f"branch =~ {guard.pattern!r}"
    if isinstance(guard, TagMatches):
        return f"tag =~ {guard.pattern!r}"
    if isinstance(guard, ChangeRequest):
        return "change_request" if guard.expected else "not change_request"
    if isinstance(guard, ParamEquals):
        return f"params.{guard.name} == {guard.value!r}"
    if isinstance(guard, EnvEquals):
        return f"env.{guard.name} == {guard.value!r}"
    return guard.label


def _parse_name_value(raw: Any, *, key: str, path: str) -> tuple[str, Any]:
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Guard '{key}' must be a mapping with name and equals", stage_path=path)
    unknown = sorted(set(raw) - {"name", "equals"})
    if unknown:
        raise DefinitionError(f"Unknown keys in guard '{key}': {', '.join(unknown)}", stage_path=path)
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise DefinitionError(f"Guard '{key}' requires a non-empty name", stage_path=path)
    if "equals" not in raw:
        raise DefinitionError(f"Guard '{key}' requires 'equals'", stage_path=path)
    return name.strip(), raw["equals"]


def _parse_members(raw: Any, *, key: str, path: str) -> tuple[Guard, ...]:
    if not isinstance(raw, (list, tuple)) or not raw:
        raise DefinitionError(f"Guard '{key}' must be a non-empty list", stage_path=path)
    return tuple(parse_guard(item, path=path) for item in raw)


def parse_guard(raw: Any, *, path: str = "") -> Guard | None:
    """Build a guard from its document form.

    A mapping with several keys is an implicit `all_of`, evaluated in key order.
    """

    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Guard must be a mapping (type={type(raw).__name__})", stage_path=path)
    if not raw:
        raise DefinitionError("Guard mapping cannot be empty", stage_path=path)

    parsed: list[Guard] = []
    for key, value in raw.items():
        if key == "branch":
            if not isinstance(value, str) or not value.strip():
                raise DefinitionError("Guard 'branch' must be a non-empty string", stage_path=path)
            parsed.append(BranchEquals(value.strip()))
        elif key == "branch_pattern":
            if not isinstance(value, str) or not value:
                raise DefinitionError("Guard 'branch_pattern' must be a regex string", stage_path=path)
            parsed.append(BranchMatches(value))
        elif key == "tag":
            if value is True:
                parsed.append(TagMatches())
            elif isinstance(value, str) and value:
                parsed.append(TagMatches(value))
            else:
                raise DefinitionError("Guard 'tag' must be true or a regex string", stage_path=path)
        elif key == "change_request":
            if not isinstance(value, bool):
                raise DefinitionError("Guard 'change_request' must be a boolean", stage_path=path)
            parsed.append(ChangeRequest(value))
        elif key == "param":
            name, expected = _parse_name_value(value, key=key, path=path)
            if not isinstance(expected, (bool, str)):
                raise DefinitionError("Guard 'param.equals' must be a boolean or string", stage_path=path)
            parsed.append(ParamEquals(name, expected))
        elif key == "environment":
            name, expected = _parse_name_value(value, key=key, path=path)
            parsed.append(EnvEquals(name, str(expected)))
        elif key == "all_of":
            parsed.append(AllOf(_parse_members(value, key=key, path=path)))
        elif key == "any_of":
            parsed.append(AnyOf(_parse_members(value, key=key, path=path)))
        elif key == "not":
            inner = parse_guard(value, path=path)
            if inner is None:
                raise DefinitionError("Guard 'not' requires a nested guard", stage_path=path)
            parsed.append(Not(inner))
        else:
            raise DefinitionError(f"Unknown guard primitive: {key}", stage_path=path)

    if len(parsed) == 1:
        return parsed[0]
    return AllOf(tuple(parsed))
