"""
regexlab/llm/translator.py: natural-language description → regex source.

One deterministic, length-bounded chat request per description. The reply is
cleaned of Markdown code fences and read as ``{"regex": "..."}``. Small models
often emit unescaped backslashes inside the JSON string, so a failed parse
gets exactly one repair pass before giving up.

The translator only returns a string; installing it into a stage is the
caller's business.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

from pydantic import ValidationError

from regexlab.core.config import TranslatorConfig
from regexlab.core.errors import EngineUnavailableError, TranslationParseError
from regexlab.core.logger import get_logger
from regexlab.llm.controller import InferenceEngineController
from regexlab.llm.prompt_builder import RegexReply, TranslationRequest, build_chat_messages

logger = logging.getLogger(__name__)

_LEADING_FENCE = re.compile(r"^```(?:json)?\n?")
_TRAILING_FENCE = re.compile(r"\n?```$")
# A backslash pair or a JSON escape is kept as is; any other backslash is lone.
_JSON_ESCAPE_OR_LONE_BACKSLASH = re.compile(r'\\([\\"/bfnrtu])|\\')


def strip_code_fences(reply: str) -> str:
    """Trim *reply* and drop a leading ```json fence and a trailing ``` fence."""
    out = reply.strip()
    out = _LEADING_FENCE.sub("", out, count=1)
    return _TRAILING_FENCE.sub("", out, count=1)


def repair_backslashes(out: str) -> str:
    r"""
    Escape the backslashes that do not start a valid JSON escape.

    ``{"regex":"\\d+\.com"}`` becomes ``{"regex":"\\d+\\.com"}``: the pair
    and any ``\"`` stay untouched.
    """
    return _JSON_ESCAPE_OR_LONE_BACKSLASH.sub(
        lambda m: m.group(0) if m.group(1) else "\\\\", out
    )


def parse_reply(reply: str) -> str:
    """
    Extract the regex source from a raw model reply.

    Args:
        reply: Raw completion text.

    Returns:
        The value of the ``regex`` field.

    Raises:
        TranslationParseError: If neither the cleaned reply nor its repaired
            form is a JSON object with a string ``regex`` field.
    """
    out = strip_code_fences(reply)
    try:
        return RegexReply.model_validate_json(out).regex
    except ValidationError:
        logger.debug("Reply is not valid JSON, trying backslash repair: %r", out)
    try:
        return RegexReply.model_validate_json(repair_backslashes(out)).regex
    except ValidationError as exc:
        raise TranslationParseError(out, f"{exc.error_count()} validation error(s)") from exc


class NaturalLanguageTranslator:
    """
    Turns descriptions like "all email addresses" into regex source text.

    Args:
        controller: The engine controller to send requests through.
        config: Request parameters; defaults when ``None``.
    """

    def __init__(
        self,
        controller: InferenceEngineController,
        config: Optional[TranslatorConfig] = None,
    ) -> None:
        self._controller = controller
        self._cfg = config or TranslatorConfig()

    async def translate(self, description: str) -> str:
        """
        Ask the model for a pattern matching *description*.

        Raises:
            ValueError: If *description* is blank.
            EngineUnavailableError: If the controller is not READY.
            TranslationParseError: If the reply cannot be read.
            DeviceLostError: If the device failed mid-request.
        """
        request = TranslationRequest(description=description)
        state = self._controller.state
        if not state.is_ready:
            raise EngineUnavailableError(state.last_failure_reason)

        log = get_logger()
        t0 = time.monotonic()
        reply = await self._controller.request(
            build_chat_messages(request),
            max_tokens=self._cfg.max_new_tokens,
            temperature=self._cfg.temperature,
        )
        try:
            pattern = parse_reply(reply)
        except TranslationParseError as exc:
            log.warn("translator", "parse_failed", {"reply": exc.reply, "detail": exc.detail})
            raise
        log.perf(
            "translator",
            "translation_done",
            latency_ms=(time.monotonic() - t0) * 1000.0,
            data={"description_chars": len(request.description), "pattern": pattern},
        )
        return pattern
