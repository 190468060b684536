# conversation.py
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger("conversation")


class State(str, enum.Enum):
    MENU_PRINCIPAL = "MENU_PRINCIPAL"
    REGISTRO_ID = "REGISTRO_ID"
    REGISTRO_PIN = "REGISTRO_PIN"
    SELECCION_ALUMNO = "SELECCION_ALUMNO"
    ELIMINAR_ALUMNO = "ELIMINAR_ALUMNO"
    MENU_ADMIN_BROADCAST = "MENU_ADMIN_BROADCAST"


@dataclass
class ConversationState:
    state: State = State.MENU_PRINCIPAL
    data: Dict[str, Any] = field(default_factory=dict)
    last_greeting: Optional[str] = None  # ISO date of the last welcome


class ConversationStore:
    """Process-local table sender id -> ConversationState, created on first contact."""

    def __init__(self):
        self._states: Dict[str, ConversationState] = {}

    def get(self, sender_id: str) -> ConversationState:
        st = self._states.get(sender_id)
        if st is None:
            st = ConversationState()
            self._states[sender_id] = st
        return st

    def set_state(self, sender_id: str, state: State, data: Optional[Dict[str, Any]] = None) -> None:
        """Switch state; the data payload is only replaced when one is given."""
        st = self.get(sender_id)
        st.state = state
        if data is not None:
            st.data = dict(data)
        logger.debug("State set: %s -> %s data=%s", sender_id, state.value, st.data)

    def last_greeting(self, sender_id: str) -> Optional[str]:
        return self.get(sender_id).last_greeting

    def set_last_greeting(self, sender_id: str, day: str) -> None:
        self.get(sender_id).last_greeting = day

    def reset(self) -> None:
        self._states.clear()

    def __len__(self) -> int:
        return len(self._states)
