"""
regexlab/output/clipboard.py: copy matches or transformed text to the clipboard.

:class:`CommandClipboard` pipes text into the first platform clipboard tool
found on ``PATH``. Anything that refuses the write raises
:class:`~regexlab.core.errors.ClipboardPermissionError`.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import sys
from typing import Optional, Protocol, Sequence

from regexlab.core.errors import ClipboardPermissionError

logger = logging.getLogger(__name__)

# Tried in order; the first one present on PATH wins.
_CLIPBOARD_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
    ("clip",),
)

_TIMEOUT_S: float = 5.0


class ClipboardSink(Protocol):
    """Anything that can receive text for the system clipboard."""

    def write_text(self, text: str) -> None: ...


class CommandClipboard:
    """
    Clipboard sink backed by a platform command.

    Args:
        command: Explicit argv to use; auto-detected when ``None``.
    """

    def __init__(self, command: Optional[Sequence[str]] = None) -> None:
        self._command = tuple(command) if command else _detect_command()

    @property
    def command(self) -> Optional[tuple[str, ...]]:
        return self._command

    def write_text(self, text: str) -> None:
        """
        Write *text* to the clipboard.

        Raises:
            ClipboardPermissionError: No tool is available, or it failed.
        """
        if self._command is None:
            raise ClipboardPermissionError("No clipboard tool found on PATH")
        # clip.exe reads the console code page; UTF-16 is what it expects.
        encoding = "utf-16-le" if sys.platform == "win32" else "utf-8"
        try:
            result = subprocess.run(
                list(self._command),
                input=text.encode(encoding),
                capture_output=True,
                timeout=_TIMEOUT_S,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ClipboardPermissionError(f"Clipboard write failed: {exc}") from exc
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", "replace").strip()
            raise ClipboardPermissionError(
                f"{self._command[0]} exited with {result.returncode}"
                + (f": {stderr}" if stderr else "")
            )
        logger.debug("Copied %d chars via %s", len(text), self._command[0])


def _detect_command() -> Optional[tuple[str, ...]]:
    for cmd in _CLIPBOARD_COMMANDS:
        if shutil.which(cmd[0]):
            return cmd
    return None


def copy_match(sink: ClipboardSink, match: str) -> None:
    sink.write_text(match)


def copy_all_matches(sink: ClipboardSink, matches: Sequence[str]) -> str:
    """Copy every match, one per line. Returns the copied text."""
    text = "\n".join(matches)
    sink.write_text(text)
    return text


def copy_transformed(sink: ClipboardSink, transformed_text: str) -> None:
    sink.write_text(transformed_text)
