"""
regexlab/core/errors.py: error taxonomy.

Pipeline, translator and store errors are local and recoverable. Backend
unavailability and exhausted device-loss retries on the fallback model are
surfaced as terminal controller states rather than raised out of the loop.
"""

from __future__ import annotations

from typing import Optional


class RegexLabError(Exception):
    """Base class for every error regexlab raises on purpose."""


class InvalidPatternError(RegexLabError):
    """
    A stage expression or flag set failed to compile or apply.

    Args:
        reason: Compiler message.
        stage_id: Id of the offending stage, when known.
        pattern: The expression that failed.
    """

    def __init__(
        self,
        reason: str,
        stage_id: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.stage_id = stage_id
        self.pattern = pattern
        where = f" in stage {stage_id}" if stage_id is not None else ""
        super().__init__(f"Invalid pattern{where}: {reason}")


class BackendUnavailableError(RegexLabError):
    """No acceleration backend present. Terminal for a controller instance."""


class DeviceLostError(RegexLabError):
    """The compute device failed after the engine loaded successfully."""


class EngineLoadError(RegexLabError):
    """Engine construction failed for one load attempt."""


class EngineUnavailableError(RegexLabError):
    """
    An inference request was made while the controller is not READY.

    Args:
        last_failure_reason: The controller's most recent failure reason.
    """

    def __init__(self, last_failure_reason: Optional[str] = None) -> None:
        self.last_failure_reason = last_failure_reason
        super().__init__(last_failure_reason or "Model unavailable")


class TranslationParseError(RegexLabError):
    """
    The model reply could not be read as ``{"regex": "..."}`` even after repair.

    Args:
        reply: The cleaned model reply that failed to parse.
    """

    def __init__(self, reply: str, detail: str = "") -> None:
        self.reply = reply
        self.detail = detail
        super().__init__(
            "Model reply is not a valid regex object"
            + (f" ({detail})" if detail else "")
        )


class StoreCorruptionError(RegexLabError):
    """
    A persisted record is not well-formed JSON of the expected shape.

    Args:
        key: Store key holding the malformed value.
    """

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        self.detail = detail
        super().__init__(
            f"Stored record {key!r} is malformed" + (f": {detail}" if detail else "")
        )


class ClipboardPermissionError(RegexLabError):
    """The platform refused clipboard access."""
