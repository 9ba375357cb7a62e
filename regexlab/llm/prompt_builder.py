"""
regexlab/llm/prompt_builder.py: chat messages and reply schema for pattern generation.

The model is told to answer with a single JSON object ``{"regex": "..."}``.
Descriptions and replies are validated with pydantic before and after the
request.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, field_validator

from regexlab.llm.backend import ChatMessage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT: str = 'Output ONLY JSON {"regex":"..."}'


class TranslationRequest(BaseModel):
    """A natural-language description of the pattern wanted."""

    description: str

    @field_validator("description")
    @classmethod
    def must_be_non_empty(cls, v: str) -> str:
        """
        Reject blank descriptions.

        Raises:
            ValueError: If the string is empty or whitespace-only.
        """
        if not v or not v.strip():
            raise ValueError("Description must not be empty")
        return v.strip()


class RegexReply(BaseModel):
    """The model's answer: exactly one string field ``regex``."""

    model_config = ConfigDict(strict=True)

    regex: str


def build_chat_messages(request: TranslationRequest) -> list[ChatMessage]:
    """Return the system + user messages for one translation request."""
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": request.description},
    ]
    logger.debug("Built translation prompt (%d chars)", len(request.description))
    return messages
