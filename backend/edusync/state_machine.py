"""
State Machine for the Voice Pipeline.
Implements deterministic state transitions with validation and hooks.

States: IDLE → LISTENING → PROCESSING → SPEAKING → IDLE
"""

import logging
from collections import deque
from typing import Optional, Callable, Awaitable, Deque, Dict, List, Set
import time

from edusync.models import PipelineState

logger = logging.getLogger(__name__)

TransitionHook = Callable[[PipelineState, PipelineState], Awaitable[None]]


class StateMachine:
    """
    Deterministic state machine for voice pipeline turn control.

    Enforces valid state transitions and notifies transition hooks.
    The machine has no terminal state: every turn, interruption, cancellation
    and error ends back in IDLE.
    """

    ALLOWED_TRANSITIONS: Dict[PipelineState, Set[PipelineState]] = {
        PipelineState.IDLE: {
            PipelineState.LISTENING,  # Audio turn starts
            PipelineState.PROCESSING,  # Text turn starts
            PipelineState.ERROR,
        },
        PipelineState.LISTENING: {
            PipelineState.PROCESSING,  # Audio complete, transcribe
            PipelineState.IDLE,  # Cancel
            PipelineState.ERROR,
        },
        PipelineState.PROCESSING: {
            PipelineState.SPEAKING,  # Answer ready, synthesize
            PipelineState.IDLE,  # Turn complete without speech, or cancel
            PipelineState.ERROR,
        },
        PipelineState.SPEAKING: {
            PipelineState.IDLE,  # Synthesis done, or cancel
            PipelineState.INTERRUPTED,  # Barge-in
            PipelineState.ERROR,
        },
        PipelineState.INTERRUPTED: {
            PipelineState.IDLE,
            PipelineState.ERROR,
        },
        PipelineState.ERROR: {
            PipelineState.IDLE,
        },
    }

    def __init__(self, initial_state: PipelineState = PipelineState.IDLE, history_limit: int = 100):
        """
        Initialize state machine.

        Args:
            initial_state: Starting state (default: IDLE)
            history_limit: Transition records kept for telemetry (oldest dropped first)
        """
        self._current_state: PipelineState = initial_state
        self._previous_state: Optional[PipelineState] = None
        self._state_history: Deque[dict] = deque(maxlen=history_limit)
        self._on_transition_hooks: List[TransitionHook] = []

        logger.debug(f"State machine initialized in state: {initial_state.value}")
        self._record_state_change(None, initial_state, "initialization")

    @property
    def current_state(self) -> PipelineState:
        return self._current_state

    @property
    def previous_state(self) -> Optional[PipelineState]:
        return self._previous_state

    @property
    def state_history(self) -> List[dict]:
        """Recent transitions, oldest first (a copy)."""
        return list(self._state_history)

    def can_transition(self, to_state: PipelineState) -> bool:
        return to_state in self.ALLOWED_TRANSITIONS.get(self._current_state, set())

    async def transition(self, to_state: PipelineState, reason: str = "") -> bool:
        """
        Move to a new state and notify transition hooks.

        Args:
            to_state: Target state
            reason: Short label recorded in history and logs

        Returns:
            True if transition succeeded, False if not allowed
        """
        if not self.can_transition(to_state):
            allowed = sorted(s.value for s in self.get_allowed_transitions())
            logger.error(
                f"Invalid state transition: {self._current_state.value} → {to_state.value}. "
                f"Allowed transitions: {allowed}"
            )
            return False

        from_state = self._current_state
        self._previous_state = from_state
        self._current_state = to_state
        self._record_state_change(from_state, to_state, reason)

        log_msg = f"State transition: {from_state.value} → {to_state.value}"
        if reason:
            log_msg += f" (reason: {reason})"
        logger.info(log_msg)

        for callback in list(self._on_transition_hooks):
            try:
                await callback(from_state, to_state)
            except Exception as e:
                logger.error(f"Error in on_transition hook: {e}", exc_info=True)

        return True

    def register_on_transition(self, callback: TransitionHook) -> None:
        """
        Register callback to execute on any state transition.

        Args:
            callback: Async callback function receiving (from_state, to_state)
        """
        self._on_transition_hooks.append(callback)

    async def reset(self) -> None:
        """
        Return to IDLE from wherever the machine is.

        Every non-IDLE state lists IDLE as a target, so one transition is enough.
        """
        if self._current_state == PipelineState.IDLE:
            return
        logger.info("Resetting state machine to IDLE")
        await self.transition(PipelineState.IDLE, reason="reset")

    def _record_state_change(
        self,
        from_state: Optional[PipelineState],
        to_state: PipelineState,
        reason: str
    ) -> None:
        self._state_history.append({
            "from_state": from_state.value if from_state else None,
            "to_state": to_state.value,
            "reason": reason,
            "timestamp": int(time.time() * 1000),  # Unix timestamp in milliseconds
        })

    def get_allowed_transitions(self) -> Set[PipelineState]:
        return self.ALLOWED_TRANSITIONS.get(self._current_state, set()).copy()

    def __repr__(self) -> str:
        return (
            f"StateMachine(current={self._current_state.value}, "
            f"previous={self._previous_state.value if self._previous_state else None})"
        )
