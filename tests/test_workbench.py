"""
tests/test_workbench.py: unit tests for the Workbench editing session.
"""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import AsyncMock, MagicMock

import pytest

from regexlab.core.errors import TranslationParseError
from regexlab.pipeline.stages import Stage
from regexlab.pipeline.workbench import Workbench
from regexlab.storage.records import SavedRule, Workspace


class TestWorkbenchEdits(unittest.TestCase):
    """Edits recompute eagerly when no debounce is configured."""

    def setUp(self) -> None:
        self.bench = Workbench("a1b2")
        self.first = self.bench.stages[0]

    def test_starts_with_one_blank_stage(self) -> None:
        self.assertEqual(len(self.bench.stages), 1)
        self.assertEqual(self.first.source_expression, "")
        self.assertEqual(self.first.flags, "g")

    def test_update_stage_recomputes(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", r"\d")
        self.assertEqual(self.bench.matches, ("1", "2"))
        self.assertEqual(self.bench.transformed_text, "ab")

    def test_worked_example_through_edits(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", r"\d")
        second = self.bench.add_stage("[ab]", replacement="X")
        self.assertEqual(self.bench.matches, ("1", "2", "a", "b"))
        self.assertEqual(self.bench.transformed_text, "XX")
        self.assertEqual(self.bench.stages[-1].id, second.id)

    def test_update_rejects_other_fields(self) -> None:
        with self.assertRaises(ValueError):
            self.bench.update_stage(self.first.id, "id", "x")

    def test_update_unknown_stage(self) -> None:
        with self.assertRaises(KeyError):
            self.bench.update_stage("nope", "replacement", "x")

    def test_invalid_pattern_clears_output_but_keeps_stages(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", r"\d")
        self.bench.add_stage("(")
        self.assertIsNotNone(self.bench.error)
        self.assertEqual(self.bench.matches, ())
        self.assertEqual(self.bench.transformed_text, "")
        self.assertEqual(len(self.bench.stages), 2)

        self.bench.update_stage(self.bench.stages[1].id, "source_expression", "(a)")
        self.assertIsNone(self.bench.error)
        self.assertEqual(self.bench.matches, ("1", "2", "a"))

    def test_empty_text_clears_output_without_error(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", "(")
        self.bench.set_text("")
        self.assertIsNone(self.bench.error)
        self.assertEqual(self.bench.transformed_text, "")

    def test_toggle_flag(self) -> None:
        self.bench.toggle_flag(self.first.id, "i")
        self.assertEqual(self.bench.stage(self.first.id).flags, "gi")
        self.bench.toggle_flag(self.first.id, "g")
        self.assertEqual(self.bench.stage(self.first.id).flags, "i")
        with self.assertRaises(ValueError):
            self.bench.toggle_flag(self.first.id, "q")

    def test_set_flags(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", "A")
        self.bench.set_flags(self.first.id, "gi")
        self.assertEqual(self.bench.matches, ("a",))

    def test_delete_keeps_last_stage(self) -> None:
        self.assertFalse(self.bench.delete_stage(self.first.id))
        other = self.bench.add_stage("b")
        self.assertTrue(self.bench.delete_stage(self.first.id))
        self.assertEqual([s.id for s in self.bench.stages], [other.id])

    def test_move_stage(self) -> None:
        b = self.bench.add_stage("b")
        c = self.bench.add_stage("c")
        self.bench.move_stage(c.id, self.first.id)
        self.assertEqual([s.id for s in self.bench.stages], [c.id, self.first.id, b.id])
        self.bench.move_stage(c.id, b.id)
        self.assertEqual([s.id for s in self.bench.stages], [self.first.id, b.id, c.id])

    def test_apply_saved_rule(self) -> None:
        rule = SavedRule(name="digits", source_expression=r"\d", flags="g", replacement="#")
        self.bench.apply_saved_rule(self.first.id, rule)
        self.assertEqual(self.bench.transformed_text, "a#b#")

    def test_install_pattern(self) -> None:
        self.bench.install_pattern("[ab]", stage_id=self.first.id)
        self.assertEqual(len(self.bench.stages), 1)
        added = self.bench.install_pattern(r"\d")
        self.assertEqual(len(self.bench.stages), 2)
        self.assertEqual(added.source_expression, r"\d")

    def test_snapshot_and_load_workspace(self) -> None:
        self.bench.update_stage(self.first.id, "source_expression", r"\d")
        ws = self.bench.snapshot("demo")
        other = Workbench("zzz")
        other.load_workspace(ws)
        self.assertEqual(other.text, "a1b2")
        self.assertEqual(other.matches, ("1", "2"))
        other.load_workspace(Workspace(name="empty"))
        self.assertEqual(len(other.stages), 1)

    def test_on_change_called(self) -> None:
        seen = MagicMock()
        bench = Workbench("x", [Stage(source_expression="x")], on_change=seen)
        bench.set_text("xx")
        self.assertEqual(seen.call_count, 2)
        seen.assert_called_with(bench)


@pytest.mark.asyncio
async def test_debounced_recompute_runs_once() -> None:
    bench = Workbench("", [Stage(source_expression="a")], debounce_ms=10)
    bench.set_text("a")
    bench.set_text("aa")
    assert bench.has_pending_recompute
    assert bench.matches == ()
    await asyncio.sleep(0.05)
    assert not bench.has_pending_recompute
    assert bench.matches == ("a", "a")
    bench.close()


@pytest.mark.asyncio
async def test_flush_forces_pending_recompute() -> None:
    bench = Workbench("", [Stage(source_expression="a")], debounce_ms=10_000)
    bench.set_text("a")
    assert bench.flush().matches == ("a",)
    assert not bench.has_pending_recompute


@pytest.mark.asyncio
async def test_generate_stage_installs_translation() -> None:
    bench = Workbench("call 555-1234", [Stage(source_expression="call ")])
    translator = MagicMock()
    translator.translate = AsyncMock(return_value=r"\d{3}-\d{4}")
    stage = await bench.generate_stage(translator, "phone numbers")
    translator.translate.assert_awaited_once_with("phone numbers")
    assert bench.stages[-1] == stage
    assert bench.matches == ("call ", "555-1234")


@pytest.mark.asyncio
async def test_generate_stage_failure_leaves_workbench_untouched() -> None:
    bench = Workbench("abc")
    before = bench.stages
    translator = MagicMock()
    translator.translate = AsyncMock(side_effect=TranslationParseError("garbage"))
    with pytest.raises(TranslationParseError):
        await bench.generate_stage(translator, "anything")
    assert bench.stages == before
