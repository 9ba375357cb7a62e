"""
regexlab/pipeline/stages.py: stage records, flag handling and replacement templates.

A stage is one ordered rewrite rule: an expression, a flag string using the
JavaScript flag letters used by browser regex tools, and a replacement
template with ``$``-style substitution tokens.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace

from regexlab.core.constants import C, FLAG_DESCRIPTIONS
from regexlab.core.errors import InvalidPatternError

# Flag letter -> re module flag. Letters missing here compile to nothing.
_RE_FLAGS: dict[str, int] = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}

# JS named-group syntax: \k<name> backreferences, escapes (left untouched),
# and (?<name> group openers that are not lookbehinds.
_JS_GROUP_SYNTAX = re.compile(r"\\k<([A-Za-z_]\w*)>|\\.|\(\?<(?![=!])", re.DOTALL)

_DIGITS = "0123456789"


def _new_stage_id() -> str:
    return uuid.uuid4().hex[:10]


@dataclass(frozen=True)
class Stage:
    """
    One ordered rule in the pipeline.

    Attributes:
        id: Unique, stable identifier.
        source_expression: The regular expression.
        flags: Flag letters, see :data:`~regexlab.core.constants.FLAG_DESCRIPTIONS`.
        replacement: Replacement template applied to every occurrence.
    """

    id: str = field(default_factory=_new_stage_id)
    source_expression: str = ""
    flags: str = C.DEFAULT_FLAGS
    replacement: str = ""

    def with_changes(self, **changes: str) -> "Stage":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class CompiledStage:
    """A stage with its compiled matcher."""

    stage: Stage
    regex: re.Pattern[str]
    sticky: bool = False


def parse_flags(flags: str) -> tuple[int, bool]:
    """
    Translate a flag string into ``re`` flags.

    ``g`` is accepted and ignored because the pipeline always finds every
    occurrence. ``u``/``v`` are the default for ``str`` patterns and ``d``
    does not change any output.

    Returns:
        ``(re_flags, sticky)``.

    Raises:
        InvalidPatternError: On an unknown or repeated flag, or ``u`` with ``v``.
    """
    seen: set[str] = set()
    re_flags = 0
    for letter in flags:
        if letter not in FLAG_DESCRIPTIONS:
            raise InvalidPatternError(f"invalid flag {letter!r}")
        if letter in seen:
            raise InvalidPatternError(f"duplicate flag {letter!r}")
        seen.add(letter)
        re_flags |= _RE_FLAGS.get(letter, 0)
    if "u" in seen and "v" in seen:
        raise InvalidPatternError("flags 'u' and 'v' cannot be combined")
    return re_flags, "y" in seen


def translate_expression(expression: str) -> str:
    """Rewrite ``(?<name>...)`` and ``\\k<name>`` into Python ``re`` syntax."""
    if "<" not in expression:
        return expression

    def _sub(m: re.Match[str]) -> str:
        if m.group(1) is not None:
            return f"(?P={m.group(1)})"
        token = m.group(0)
        if token.startswith("\\"):
            return token
        return "(?P<"

    return _JS_GROUP_SYNTAX.sub(_sub, expression)


def compile_stage(stage: Stage) -> CompiledStage:
    """
    Compile a stage's expression with its flags.

    Raises:
        InvalidPatternError: If the expression or a flag is invalid.
    """
    try:
        re_flags, sticky = parse_flags(stage.flags)
    except InvalidPatternError as exc:
        raise InvalidPatternError(
            exc.reason, stage_id=stage.id, pattern=stage.source_expression
        ) from None
    try:
        regex = re.compile(translate_expression(stage.source_expression), re_flags)
    except (re.error, OverflowError) as exc:
        raise InvalidPatternError(
            str(exc), stage_id=stage.id, pattern=stage.source_expression
        ) from exc
    return CompiledStage(stage=stage, regex=regex, sticky=sticky)


def expand_template(template: str, match: re.Match[str]) -> str:
    """
    Expand a replacement template for one match.

    Tokens: ``$$`` a literal ``$``; ``$&`` the whole match; ``$``` the text
    before the match; ``$'`` the text after it; ``$n``/``$nn`` capture group
    *n* (unmatched groups expand to nothing, references past the last group
    stay literal); ``$<name>`` a named group. Everything else is literal.
    """
    if "$" not in template:
        return template

    subject = match.string
    group_count = match.re.groups
    named = match.re.groupindex
    out: list[str] = []
    i = 0
    n = len(template)

    while i < n:
        ch = template[i]
        if ch != "$" or i + 1 >= n:
            out.append(ch)
            i += 1
            continue

        nxt = template[i + 1]
        if nxt == "$":
            out.append("$")
            i += 2
        elif nxt == "&":
            out.append(match.group(0))
            i += 2
        elif nxt == "`":
            out.append(subject[: match.start()])
            i += 2
        elif nxt == "'":
            out.append(subject[match.end():])
            i += 2
        elif nxt in _DIGITS:
            two = template[i + 1 : i + 3]
            if len(two) == 2 and two[1] in _DIGITS and 1 <= int(two) <= group_count:
                index, width = int(two), 3
            elif 1 <= int(nxt) <= group_count:
                index, width = int(nxt), 2
            else:
                out.append("$")
                i += 1
                continue
            out.append(match.group(index) or "")
            i += width
        elif nxt == "<" and named:
            close = template.find(">", i + 2)
            if close == -1:
                out.append("$")
                i += 1
                continue
            name = template[i + 2 : close]
            value = match.group(name) if name in named else None
            out.append(value or "")
            i = close + 1
        else:
            out.append("$")
            i += 1

    return "".join(out)
