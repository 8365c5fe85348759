"""
Execution Engine - Order State Machine.

============================================================
PURPOSE
============================================================
Guards the lifecycle of one OpenOrder.

STATE MACHINE:

    PENDING ──────────────────────► FILLED
       │                              ▲
       ├──► PARTIALLY_FILLED ─────────┤
       │         │                    │
       ▼         ▼                    │
     STALE ───────────────────────────┘
       │
       ▼
    CANCELLED

    PENDING and PARTIALLY_FILLED may also go straight to
    CANCELLED when the exchange cancels the order.

INVARIANTS:
- Terminal states are final
- Each transition has a guard
- All transitions are logged

============================================================
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field

from core.exceptions import OrderLifecycleError

from .types import OpenOrder, OrderState


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[OrderState, Set[OrderState]] = {
    OrderState.PENDING: {
        OrderState.PARTIALLY_FILLED,
        OrderState.FILLED,
        OrderState.STALE,
        OrderState.CANCELLED,
    },
    OrderState.PARTIALLY_FILLED: {
        OrderState.PARTIALLY_FILLED,
        OrderState.FILLED,
        OrderState.STALE,
        OrderState.CANCELLED,
    },
    OrderState.STALE: {
        OrderState.FILLED,
        OrderState.CANCELLED,
    },
    # Terminal states - no transitions out
    OrderState.FILLED: set(),
    OrderState.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a state transition."""

    order_id: str
    """Exchange order id."""

    from_state: OrderState
    to_state: OrderState

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    reason: str = ""

    details: Dict[str, Any] = field(default_factory=dict)


# ============================================================
# ORDER STATE MACHINE
# ============================================================

class OrderStateMachine:
    """
    State machine for one order.

    Manages state transitions with:
    - Guard checks
    - Event emission
    - History tracking
    """

    def __init__(
        self,
        order: OpenOrder,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._order = order
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._history: List[StateTransitionEvent] = []
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []

    @property
    def current_state(self) -> OrderState:
        return self._order.status

    @property
    def order(self) -> OpenOrder:
        return self._order

    @property
    def history(self) -> List[StateTransitionEvent]:
        return list(self._history)

    def add_listener(self, listener: Callable[[StateTransitionEvent], None]) -> None:
        self._listeners.append(listener)

    @staticmethod
    def can_transition(from_state: OrderState, to_state: OrderState) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Returns:
            Tuple of (allowed, reason)
        """
        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    def transition_to(
        self,
        target_state: OrderState,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransitionEvent:
        """
        Transition to a new state.

        Raises:
            OrderLifecycleError: If the transition is not allowed
        """
        allowed, why = self.can_transition(self.current_state, target_state)
        if not allowed:
            raise OrderLifecycleError(
                f"Cannot transition {self._order.order_id} from "
                f"{self.current_state.value} to {target_state.value}: {why}",
                context={"order_id": self._order.order_id, "symbol": self._order.symbol},
            )

        event = StateTransitionEvent(
            order_id=self._order.order_id,
            from_state=self.current_state,
            to_state=target_state,
            timestamp=self._now(),
            reason=reason,
            details=details or {},
        )

        self._order.status = target_state
        self._history.append(event)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"State listener error: {e}")

        logger.info(
            f"Order {self._order.order_id} ({self._order.symbol}): "
            f"{event.from_state.value} -> {event.to_state.value} ({reason})"
        )
        return event

    # --------------------------------------------------------
    # CONVENIENCE METHODS
    # --------------------------------------------------------

    def mark_partially_filled(self, reason: str = "Partial fill") -> StateTransitionEvent:
        return self.transition_to(
            OrderState.PARTIALLY_FILLED,
            reason,
            details={"filled_quantity": str(self._order.filled_quantity)},
        )

    def mark_filled(self, reason: str = "Order filled") -> StateTransitionEvent:
        return self.transition_to(
            OrderState.FILLED,
            reason,
            details={"filled_quantity": str(self._order.filled_quantity)},
        )

    def mark_stale(self, reason: str = "Fill timeout") -> StateTransitionEvent:
        return self.transition_to(
            OrderState.STALE,
            reason,
            details={"remaining": str(self._order.remaining_quantity)},
        )

    def mark_cancelled(self, reason: str = "Order cancelled") -> StateTransitionEvent:
        return self.transition_to(OrderState.CANCELLED, reason)

    def is_terminal(self) -> bool:
        return self.current_state.is_terminal()

    def is_active(self) -> bool:
        return self.current_state.is_active()
