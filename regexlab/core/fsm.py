"""
regexlab/core/fsm.py: explicit state machine for the inference engine lifecycle.

Owns the single :class:`EngineState` of one controller: status, active model
variant, retry counter, last failure reason and load generation. Every change
goes through :meth:`EngineStateMachine.transition`, which validates the edge
against :data:`_VALID_TRANSITIONS`, records it in a bounded history and
notifies the owner.

Runs on one asyncio event loop, so no locking is done here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from regexlab.core.constants import C, EngineStatus, ModelVariant
from regexlab.core.errors import RegexLabError

logger = logging.getLogger(__name__)


class InvalidTransitionError(RegexLabError, RuntimeError):
    """
    Raised when a requested transition is not in the valid transition map.

    Args:
        from_status: Current status at the time of the illegal attempt.
        to_status: Requested (invalid) target status.
        reason: Caller-supplied reason string.
    """

    def __init__(
        self,
        from_status: EngineStatus,
        to_status: EngineStatus,
        reason: str = "",
    ) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_status.value} -> {to_status.value}"
            + (f" (reason: {reason})" if reason else "")
        )


# ──────────────────────────────────────────────────────────────
# Valid transition map
# ──────────────────────────────────────────────────────────────

_VALID_TRANSITIONS: dict[EngineStatus, list[EngineStatus]] = {
    EngineStatus.UNINITIALIZED: [
        EngineStatus.PROBING_BACKEND,
    ],
    EngineStatus.PROBING_BACKEND: [
        EngineStatus.LOADING,
        EngineStatus.FAILED,
    ],
    EngineStatus.LOADING: [
        EngineStatus.READY,
        EngineStatus.FAILED,
        EngineStatus.LOADING,   # superseded by a newer load
    ],
    EngineStatus.READY: [
        EngineStatus.FAILED,
        EngineStatus.LOADING,   # explicit reconfigure
    ],
    EngineStatus.FAILED: [
        EngineStatus.RETRYING,
        EngineStatus.LOADING,   # explicit reconfigure after a load failure
    ],
    EngineStatus.RETRYING: [
        EngineStatus.LOADING,
    ],
}

_MAX_HISTORY = 50


@dataclass(frozen=True)
class EngineState:
    """
    Immutable snapshot of a controller's lifecycle state.

    Attributes:
        status: Current lifecycle status.
        active_variant: Model variant being (or last) loaded.
        retry_count: Reload attempts consumed on the active variant.
        last_failure_reason: Message of the most recent failure, if any.
        generation: Token of the most recent load attempt.
        terminal: ``True`` when no automatic recovery will happen.
    """

    status: EngineStatus = EngineStatus.UNINITIALIZED
    active_variant: ModelVariant = ModelVariant.PRIMARY
    retry_count: int = 0
    last_failure_reason: Optional[str] = None
    generation: int = 0
    terminal: bool = False

    @property
    def is_ready(self) -> bool:
        return self.status is EngineStatus.READY


StateListener = Callable[[EngineState, EngineState, str], None]

_UNSET = object()


class EngineStateMachine:
    """
    Validated lifecycle state machine for one inference engine controller.

    Illegal transitions raise :class:`InvalidTransitionError`. A change of
    ``active_variant`` always resets ``retry_count`` to 0, and the counter is
    bounded to ``[0, max_retries]``.

    Args:
        max_retries: Upper bound for ``retry_count``.
        on_transition: Optional callback invoked after every successful
            transition with signature ``(old_state, new_state, reason)``.
    """

    def __init__(
        self,
        max_retries: int = C.MAX_RETRIES,
        on_transition: Optional[StateListener] = None,
    ) -> None:
        self._max_retries = max_retries
        self._state = EngineState()
        self._history: list[dict] = []
        self._on_transition = on_transition

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def status(self) -> EngineStatus:
        return self._state.status

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def can_transition(self, target: EngineStatus) -> bool:
        """Return ``True`` if *target* is a valid next status."""
        return target in _VALID_TRANSITIONS.get(self._state.status, [])

    def transition(
        self,
        new_status: EngineStatus,
        reason: str = "",
        *,
        variant: Optional[ModelVariant] = None,
        retry_count: Optional[int] = None,
        failure_reason: object = _UNSET,
        generation: Optional[int] = None,
        terminal: Optional[bool] = None,
    ) -> EngineState:
        """
        Move to *new_status*, optionally updating the other state fields.

        Args:
            new_status: Target status.
            reason: Human-readable reason (for logs and history).
            variant: New active variant; a change resets ``retry_count``.
            retry_count: New retry counter value.
            failure_reason: New ``last_failure_reason`` (``None`` clears it).
            generation: Load generation token.
            terminal: Whether automatic recovery has ended.

        Returns:
            The new :class:`EngineState`.

        Raises:
            InvalidTransitionError: If the edge is not in the transition map.
            ValueError: If *retry_count* is out of bounds.
        """
        old = self._state
        if new_status not in _VALID_TRANSITIONS.get(old.status, []):
            raise InvalidTransitionError(old.status, new_status, reason)

        changes: dict = {"status": new_status}
        if variant is not None:
            changes["active_variant"] = variant
        if retry_count is not None:
            if not 0 <= retry_count <= self._max_retries:
                raise ValueError(
                    f"retry_count must be in [0, {self._max_retries}], got {retry_count}"
                )
            changes["retry_count"] = retry_count
        if variant is not None and variant is not old.active_variant:
            changes["retry_count"] = 0
        if failure_reason is not _UNSET:
            changes["last_failure_reason"] = failure_reason
        if generation is not None:
            changes["generation"] = generation
        if terminal is not None:
            changes["terminal"] = terminal

        new = replace(old, **changes)
        self._state = new
        self._record(old, new, reason)

        logger.info(
            "Engine: %s -> %s (%s, retry=%d)%s",
            old.status.value,
            new.status.value,
            new.active_variant.value,
            new.retry_count,
            f" [{reason}]" if reason else "",
        )

        if self._on_transition is not None:
            try:
                self._on_transition(old, new, reason)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Engine transition callback raised: %s", exc)
        return new

    def reset(self) -> None:
        """
        Force the machine back to UNINITIALIZED unconditionally.

        Bypasses the transition map; used on controller shutdown.
        """
        old = self._state
        self._state = EngineState(generation=old.generation)
        self._record(old, self._state, "RESET")
        logger.warning("Engine: RESET from %s", old.status.value)

    def get_history(self) -> list[dict]:
        """
        Return a copy of the last (up to 50) transition records, oldest first.

        Each record has keys ``from``, ``to``, ``variant``, ``retry_count``,
        ``reason`` and ``timestamp``.
        """
        return list(self._history)

    def _record(self, old: EngineState, new: EngineState, reason: str) -> None:
        self._history.append(
            {
                "from": old.status.value,
                "to": new.status.value,
                "variant": new.active_variant.value,
                "retry_count": new.retry_count,
                "reason": reason,
                "timestamp": time.time(),
            }
        )
        if len(self._history) > _MAX_HISTORY:
            self._history.pop(0)

    def __repr__(self) -> str:
        s = self._state
        return (
            f"EngineStateMachine(status={s.status.value}, variant={s.active_variant.value}, "
            f"retry={s.retry_count}, generation={s.generation})"
        )
