"""
regexlab/storage/records.py: saved rules, workspaces and their persisted shape.

Domain objects are frozen dataclasses. The JSON written to the key-value store
keeps the field names of the browser workbench export format (``pattern`` rather than
``source_expression``, ``patterns`` for a workspace's stages) so existing
exports load unchanged; pydantic models validate that shape on the way in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

from pydantic import BaseModel, ConfigDict, TypeAdapter, field_validator

from regexlab.pipeline.stages import Stage


@dataclass(frozen=True)
class SavedRule:
    """A named, reusable stage definition."""

    name: str
    source_expression: str
    flags: str = ""
    replacement: str = ""


@dataclass(frozen=True)
class Workspace:
    """A named snapshot of the input text and the ordered stages."""

    name: str
    text: str = ""
    stages: tuple[Stage, ...] = field(default_factory=tuple)


# ──────────────────────────────────────────────
# Persisted record shapes
# ──────────────────────────────────────────────


class _Record(BaseModel):
    model_config = ConfigDict(extra="ignore")


class StageRecord(_Record):
    """One stage inside a persisted workspace."""

    id: str
    pattern: str = ""
    flags: str = ""
    replacement: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: object) -> str:
        """Older exports stored numeric ids; keep them as strings."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v  # type: ignore[return-value]

    def to_stage(self) -> Stage:
        return Stage(
            id=self.id,
            source_expression=self.pattern,
            flags=self.flags,
            replacement=self.replacement,
        )

    @classmethod
    def from_stage(cls, stage: Stage) -> "StageRecord":
        return cls(
            id=stage.id,
            pattern=stage.source_expression,
            flags=stage.flags,
            replacement=stage.replacement,
        )


class SavedPatternRecord(_Record):
    """Persisted form of a :class:`SavedRule`."""

    name: str
    pattern: str
    flags: str = ""
    replacement: str = ""

    def to_rule(self) -> SavedRule:
        return SavedRule(
            name=self.name,
            source_expression=self.pattern,
            flags=self.flags,
            replacement=self.replacement,
        )

    @classmethod
    def from_rule(cls, rule: SavedRule) -> "SavedPatternRecord":
        return cls(
            name=rule.name,
            pattern=rule.source_expression,
            flags=rule.flags,
            replacement=rule.replacement,
        )


class WorkspaceRecord(_Record):
    """Persisted form of a :class:`Workspace`."""

    name: str
    text: str = ""
    patterns: list[StageRecord] = []

    def to_workspace(self) -> Workspace:
        return Workspace(
            name=self.name,
            text=self.text,
            stages=tuple(p.to_stage() for p in self.patterns),
        )

    @classmethod
    def from_workspace(cls, workspace: Workspace) -> "WorkspaceRecord":
        return cls(
            name=workspace.name,
            text=workspace.text,
            patterns=[StageRecord.from_stage(s) for s in workspace.stages],
        )


SAVED_PATTERNS_ADAPTER = TypeAdapter(list[SavedPatternRecord])
WORKSPACES_ADAPTER = TypeAdapter(list[WorkspaceRecord])


def dump_rules(rules: Sequence[SavedRule]) -> str:
    records = [SavedPatternRecord.from_rule(r) for r in rules]
    return SAVED_PATTERNS_ADAPTER.dump_json(records).decode("utf-8")


def dump_workspaces(workspaces: Sequence[Workspace]) -> str:
    records = [WorkspaceRecord.from_workspace(w) for w in workspaces]
    return WORKSPACES_ADAPTER.dump_json(records).decode("utf-8")
