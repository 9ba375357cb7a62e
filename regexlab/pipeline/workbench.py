"""
regexlab/pipeline/workbench.py: the editing session around the pipeline.

A :class:`Workbench` owns the input text and the ordered stage list and keeps
the last pipeline outcome. Every edit recomputes synchronously unless a
debounce interval is configured and an event loop is running.

An invalid stage clears the matches and the transformed text but leaves every
stage in place so the user can fix it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from regexlab.core.constants import FLAG_DESCRIPTIONS
from regexlab.core.errors import InvalidPatternError
from regexlab.pipeline.evaluator import PipelineResult, apply_stages
from regexlab.pipeline.stages import Stage
from regexlab.storage.records import SavedRule, Workspace

if TYPE_CHECKING:
    from regexlab.llm.translator import NaturalLanguageTranslator

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = frozenset({"source_expression", "replacement"})

ChangeCallback = Callable[["Workbench"], None]


class Workbench:
    """
    Text + ordered stages + the current pipeline outcome.

    Args:
        text: Initial input text.
        stages: Initial stages; a single blank stage when omitted or empty.
        debounce_ms: Delay before recomputing after an edit. ``0`` recomputes
            immediately; positive values need a running event loop and
            otherwise fall back to immediate recomputation.
        on_change: Called after every recomputation.
    """

    def __init__(
        self,
        text: str = "",
        stages: Optional[Iterable[Stage]] = None,
        *,
        debounce_ms: int = 0,
        on_change: Optional[ChangeCallback] = None,
    ) -> None:
        self._text = text
        self._stages: list[Stage] = list(stages or []) or [Stage()]
        self._debounce_s = debounce_ms / 1000.0
        self._on_change = on_change
        self._pending: Optional[asyncio.TimerHandle] = None
        self._result = PipelineResult()
        self._error: Optional[InvalidPatternError] = None
        self.recompute()

    # ──────────────────────────────────────────
    # Read access
    # ──────────────────────────────────────────

    @property
    def text(self) -> str:
        return self._text

    @property
    def stages(self) -> tuple[Stage, ...]:
        return tuple(self._stages)

    @property
    def result(self) -> PipelineResult:
        return self._result

    @property
    def matches(self) -> tuple[str, ...]:
        return self._result.matches

    @property
    def transformed_text(self) -> str:
        return self._result.transformed_text

    @property
    def error(self) -> Optional[InvalidPatternError]:
        """The compile error of the last recomputation, if any."""
        return self._error

    @property
    def has_pending_recompute(self) -> bool:
        return self._pending is not None

    def stage(self, stage_id: str) -> Stage:
        """Return the stage with *stage_id*."""
        return self._stages[self._index(stage_id)]

    # ──────────────────────────────────────────
    # Edits
    # ──────────────────────────────────────────

    def set_text(self, text: str) -> None:
        self._text = text
        self._changed()

    def add_stage(
        self,
        source_expression: str = "",
        flags: Optional[str] = None,
        replacement: str = "",
    ) -> Stage:
        """Append a new stage and return it."""
        stage = Stage(source_expression=source_expression, replacement=replacement)
        if flags is not None:
            stage = stage.with_changes(flags=flags)
        self._stages.append(stage)
        self._changed()
        return stage

    def update_stage(self, stage_id: str, field: str, value: str) -> Stage:
        """
        Replace the expression or the replacement template of one stage.

        Raises:
            ValueError: If *field* is not ``source_expression`` or ``replacement``.
            KeyError: If no stage has *stage_id*.
        """
        if field not in _EDITABLE_FIELDS:
            raise ValueError(f"Stage field {field!r} is not editable")
        return self._replace(stage_id, **{field: value})

    def set_flags(self, stage_id: str, flags: str) -> Stage:
        return self._replace(stage_id, flags=flags)

    def toggle_flag(self, stage_id: str, flag: str) -> Stage:
        """Add *flag* to a stage, or remove it when already present."""
        if flag not in FLAG_DESCRIPTIONS:
            raise ValueError(f"Unknown flag {flag!r}")
        flags = self.stage(stage_id).flags
        flags = flags.replace(flag, "", 1) if flag in flags else flags + flag
        return self._replace(stage_id, flags=flags)

    def delete_stage(self, stage_id: str) -> bool:
        """
        Remove a stage. The last remaining stage is never removed.

        Returns:
            ``True`` if a stage was removed.
        """
        if len(self._stages) <= 1:
            return False
        del self._stages[self._index(stage_id)]
        self._changed()
        return True

    def move_stage(self, active_id: str, over_id: str) -> None:
        """Move the *active_id* stage to the position of *over_id*."""
        if active_id == over_id:
            return
        src = self._index(active_id)
        dst = self._index(over_id)
        self._stages.insert(dst, self._stages.pop(src))
        self._changed()

    def apply_saved_rule(self, stage_id: str, rule: SavedRule) -> Stage:
        """Copy a saved rule's expression, flags and replacement into a stage."""
        return self._replace(
            stage_id,
            source_expression=rule.source_expression,
            flags=rule.flags or "",
            replacement=rule.replacement,
        )

    def install_pattern(self, pattern: str, stage_id: Optional[str] = None) -> Stage:
        """
        Install a generated pattern.

        With *stage_id* the expression of that stage is replaced; otherwise a
        new stage is appended.
        """
        if stage_id is not None:
            return self._replace(stage_id, source_expression=pattern)
        return self.add_stage(source_expression=pattern)

    async def generate_stage(
        self,
        translator: "NaturalLanguageTranslator",
        description: str,
        stage_id: Optional[str] = None,
    ) -> Stage:
        """
        Translate *description* and install the resulting pattern.

        Translator errors propagate and leave the workbench untouched.
        """
        pattern = await translator.translate(description)
        return self.install_pattern(pattern, stage_id=stage_id)

    # ──────────────────────────────────────────
    # Workspaces
    # ──────────────────────────────────────────

    def snapshot(self, name: str) -> Workspace:
        return Workspace(name=name, text=self._text, stages=tuple(self._stages))

    def load_workspace(self, workspace: Workspace) -> None:
        """Replace the text and stages with a workspace's snapshot."""
        self._text = workspace.text
        self._stages = list(workspace.stages) or [Stage()]
        self._changed()

    # ──────────────────────────────────────────
    # Recomputation
    # ──────────────────────────────────────────

    def recompute(self) -> PipelineResult:
        """Run the pipeline now and store the outcome."""
        self._cancel_pending()
        if not self._text:
            self._result = PipelineResult()
            self._error = None
        else:
            try:
                self._result = apply_stages(self._text, self._stages)
                self._error = None
            except InvalidPatternError as exc:
                logger.debug("Pipeline error: %s", exc)
                self._result = PipelineResult()
                self._error = exc
        if self._on_change is not None:
            self._on_change(self)
        return self._result

    def flush(self) -> PipelineResult:
        """Force a deferred recomputation to happen now."""
        if self._pending is not None:
            return self.recompute()
        return self._result

    def close(self) -> None:
        self._cancel_pending()

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _changed(self) -> None:
        if self._debounce_s <= 0:
            self.recompute()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.recompute()
            return
        self._cancel_pending()
        self._pending = loop.call_later(self._debounce_s, self.recompute)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _index(self, stage_id: str) -> int:
        for i, stage in enumerate(self._stages):
            if stage.id == stage_id:
                return i
        raise KeyError(stage_id)

    def _replace(self, stage_id: str, **changes: str) -> Stage:
        i = self._index(stage_id)
        self._stages[i] = self._stages[i].with_changes(**changes)
        self._changed()
        return self._stages[i]
