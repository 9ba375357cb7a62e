"""
regexlab/core/constants.py: system constants for regexlab.

Engine lifecycle enums, retry policy defaults, model variant identifiers and
the regex flag table shared by the pipeline and the CLI.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────
# Engine lifecycle
# ──────────────────────────────────────────────────────────────

class EngineStatus(Enum):
    """All states of the inference engine lifecycle controller."""

    UNINITIALIZED = "UNINITIALIZED"
    PROBING_BACKEND = "PROBING_BACKEND"
    LOADING = "LOADING"
    READY = "READY"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class ModelVariant(Enum):
    """Which configured model the controller is running."""

    PRIMARY = "PRIMARY"
    FALLBACK = "FALLBACK"


# ──────────────────────────────────────────────────────────────
# Frozen constants dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RegexLabConstants:
    """
    Frozen dataclass holding regexlab system constants.

    Use the class attributes directly; do not instantiate. Runtime-tunable
    values (model ids, delays) live in :mod:`regexlab.core.config` and default
    to these.

    Example::

        from regexlab.core.constants import C

        print(C.MAX_RETRIES)          # 3
        print(C.BASE_RETRY_DELAY_S)   # 4.0
    """

    # ── Retry policy ──────────────────────────────────────────
    MAX_RETRIES: ClassVar[int] = 3
    """Reload attempts per variant after device loss before downgrading."""

    BASE_RETRY_DELAY_S: ClassVar[float] = 4.0
    """Base backoff delay; attempt n waits BASE * 2**n seconds."""

    # ── Model variants ────────────────────────────────────────
    PRIMARY_MODEL_ID: ClassVar[str] = "Qwen/Qwen2.5-0.5B-Instruct"
    """Standard model."""

    FALLBACK_MODEL_ID: ClassVar[str] = "Qwen/Qwen1.5-0.5B-Chat"
    """Lightweight fallback model used once the primary keeps losing its device."""

    # ── Translation ───────────────────────────────────────────
    TRANSLATE_MAX_TOKENS: ClassVar[int] = 100
    """Completion length bound for description-to-regex requests."""

    TRANSLATE_TEMPERATURE: ClassVar[float] = 0.0
    """Zero temperature: the same description always yields the same reply."""

    # ── Storage keys (browser workbench export format) ───────
    SAVED_RULES_KEY: ClassVar[str] = "savedPatterns"
    WORKSPACES_KEY: ClassVar[str] = "workspaces"

    # ── Pipeline ──────────────────────────────────────────────
    DEFAULT_FLAGS: ClassVar[str] = "g"
    """Flags given to a freshly added stage."""


#: Convenience alias: ``from regexlab.core.constants import C``
C = RegexLabConstants


# ──────────────────────────────────────────────────────────────
# Regex flags
# ──────────────────────────────────────────────────────────────

FLAG_DESCRIPTIONS: dict[str, str] = {
    "g": "Global: Find all matches",
    "m": "Multiline: ^ and $ match line starts/ends",
    "i": "Case insensitive",
    "y": "Sticky: Match from lastIndex",
    "u": "Unicode: Full Unicode support",
    "v": "Unicode Sets: Advanced Unicode features",
    "s": "DotAll: Dot matches newlines",
    "d": "Indices: Return match positions",
}
"""Flag letters accepted on a stage, in display order."""
