"""Validated, read-only view over a pipeline definition's stage tree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from stagekit.engine.nodes import (
    PipelineDefinition,
    PostActions,
    StageSpec,
    Step,
    effective_step_name,
)
from stagekit.errors import DefinitionError


def join_path(parent: str, name: str) -> str:
    return f"{parent}/{name}" if parent else name


@dataclass(frozen=True)
class ParallelGroup:
    """All siblings of one parallel block, dispatched together."""

    path: str
    stage: StageSpec
    branches: tuple[StageSpec, ...]

    def branch_paths(self) -> tuple[str, ...]:
        return tuple(join_path(self.path, branch.name) for branch in self.branches)


class PipelineGraph:
    def __init__(self, definition: PipelineDefinition, root: StageSpec) -> None:
        self._definition = definition
        self._root = root
        self._index: dict[str, StageSpec] = {}
        for path, stage in self._iter(root, root.name):
            self._index[path] = stage

    @classmethod
    def build(cls, definition: PipelineDefinition) -> "PipelineGraph":
        if not isinstance(definition, PipelineDefinition):
            raise TypeError(
                f"PipelineGraph.build expects a PipelineDefinition (type={type(definition).__name__})"
            )
        root = definition.root_stage()
        cls._validate_stage(root, root.name)
        return cls(definition, root)

    @property
    def definition(self) -> PipelineDefinition:
        return self._definition

    @property
    def root(self) -> StageSpec:
        return self._root

    @property
    def root_path(self) -> str:
        return self._root.name

    @staticmethod
    def _validate_names(names: list[str], *, kind: str, scope: str) -> None:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for name in names:
            if name in seen:
                duplicates.add(name)
            seen.add(name)
        if duplicates:
            raise DefinitionError(
                f"Duplicate {kind} name(s): {', '.join(sorted(duplicates))}", stage_path=scope
            )

    @classmethod
    def _validate_steps(cls, steps: tuple[Step, ...], *, scope: str) -> None:
        cls._validate_names(
            [effective_step_name(step, index=i) for i, step in enumerate(steps)],
            kind="step",
            scope=scope,
        )

    @classmethod
    def _validate_stage(cls, stage: StageSpec, path: str) -> None:
        if not isinstance(stage, StageSpec):
            raise DefinitionError(f"Expected a StageSpec (type={type(stage).__name__})", stage_path=path)
        if stage.parallel is not None and not stage.parallel:
            raise DefinitionError("Parallel block must contain at least one stage", stage_path=path)
        if not isinstance(stage.post, PostActions):
            raise DefinitionError("Stage post-actions must be PostActions", stage_path=path)

        cls._validate_steps(stage.steps, scope=path)
        for condition in ("always", "success", "failure"):
            cls._validate_steps(stage.post.for_condition(condition), scope=f"{path}#post.{condition}")

        children = stage.children()
        cls._validate_names([child.name for child in children], kind="stage", scope=path)
        for child in children:
            cls._validate_stage(child, join_path(path, child.name))

    def _iter(self, stage: StageSpec, path: str) -> Iterator[tuple[str, StageSpec]]:
        yield path, stage
        for child in stage.children():
            yield from self._iter(child, join_path(path, child.name))

    def walk(self) -> Iterator[tuple[str, StageSpec]]:
        """Depth-first, declaration-order traversal of every stage (root included)."""

        yield from self._iter(self._root, self._root.name)

    def parallel_groups(self) -> Iterator[ParallelGroup]:
        for path, stage in self.walk():
            if stage.parallel is not None:
                yield ParallelGroup(path=path, stage=stage, branches=stage.parallel)

    def paths(self) -> tuple[str, ...]:
        return tuple(self._index.keys())

    def find(self, path: str) -> StageSpec:
        try:
            return self._index[path]
        except KeyError:
            raise KeyError(f"No stage at {path}") from None

    def render_tree(self) -> str:
        lines: list[str] = []

        def _render(stage: StageSpec, depth: int) -> None:
            marker = " [parallel]" if stage.parallel is not None else ""
            gate = " [gate]" if stage.gate is not None else ""
            agent = f" @{stage.agent}" if stage.agent else ""
            lines.append(f"{'  ' * depth}- {stage.name}{marker}{gate}{agent}")
            for child in stage.children():
                _render(child, depth + 1)

        _render(self._root, 0)
        return "\n".join(lines)
