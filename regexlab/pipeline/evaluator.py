"""
regexlab/pipeline/evaluator.py: the sequential pattern-transformation pipeline.

:func:`apply_stages` is pure: no hidden state, no side effects, identical
inputs give identical outputs. Callers run it on every keystroke.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, Sequence

from regexlab.pipeline.stages import CompiledStage, Stage, compile_stage, expand_template


@dataclass(frozen=True)
class PipelineResult:
    """
    Outcome of running the pipeline.

    Attributes:
        matches: Whole-match texts, stage by stage, in scan order.
        transformed_text: Text after the last stage.
    """

    matches: tuple[str, ...] = ()
    transformed_text: str = ""


def iter_matches(compiled: CompiledStage, text: str) -> Iterator[re.Match[str]]:
    """
    Yield every occurrence left to right, non-overlapping.

    Sticky stages only accept a match starting exactly where the previous
    one ended (the first at position 0); an empty match moves the anchor
    forward by one character.
    """
    if not compiled.sticky:
        yield from compiled.regex.finditer(text)
        return

    pos = 0
    while pos <= len(text):
        m = compiled.regex.match(text, pos)
        if m is None:
            return
        yield m
        pos = m.end() + 1 if m.end() == m.start() else m.end()


def run_stage(compiled: CompiledStage, text: str) -> tuple[str, list[str]]:
    """
    Scan and rewrite *text* with one compiled stage.

    Returns:
        ``(rewritten_text, matched_texts)``.
    """
    template = compiled.stage.replacement
    pieces: list[str] = []
    found: list[str] = []
    last = 0
    for m in iter_matches(compiled, text):
        found.append(m.group(0))
        pieces.append(text[last : m.start()])
        pieces.append(expand_template(template, m))
        last = m.end()
    if not found:
        return text, found
    pieces.append(text[last:])
    return "".join(pieces), found


def apply_stages(text: str, stages: Sequence[Stage]) -> PipelineResult:
    """
    Apply *stages* to *text* in order.

    Each stage scans the output of the previous one; its matches are appended
    after those of earlier stages. With no stages the text comes back
    unchanged and no matches are reported.

    Raises:
        InvalidPatternError: If any stage fails to compile. No partial
            result is produced.
    """
    current = text
    matches: list[str] = []
    for stage in stages:
        current, found = run_stage(compile_stage(stage), current)
        matches.extend(found)
    return PipelineResult(matches=tuple(matches), transformed_text=current)
