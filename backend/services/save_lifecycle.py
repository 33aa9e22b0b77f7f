"""
Save lifecycle for one receipt session.

    idle ──begin──▶ loading ──succeed──▶ success   (terminal)
                       │
                       └──fail(msg)──▶ error ──dismiss──▶ idle
                                         │
                                         └──begin──▶ loading  (retry)

``success`` only goes away with a new session, which prevents duplicate rows.
"""
import logging
from typing import Optional

from models.schemas import SaveState

logger = logging.getLogger("bonnenmonster.lifecycle")


class InvalidTransition(RuntimeError):
    """Raised when a transition is not allowed from the current state."""

    def __init__(self, state: SaveState, action: str):
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} while save state is '{state.value}'")


class SaveLifecycle:
    def __init__(self):
        self.state: SaveState = SaveState.IDLE
        self.error_message: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.state == SaveState.LOADING

    @property
    def done(self) -> bool:
        return self.state == SaveState.SUCCESS

    @property
    def can_begin(self) -> bool:
        return self.state in (SaveState.IDLE, SaveState.ERROR)

    def begin(self) -> None:
        if not self.can_begin:
            raise InvalidTransition(self.state, "start a save")
        self.state = SaveState.LOADING
        self.error_message = None

    def succeed(self) -> None:
        if self.state != SaveState.LOADING:
            raise InvalidTransition(self.state, "complete a save")
        self.state = SaveState.SUCCESS

    def fail(self, message: str) -> None:
        if self.state != SaveState.LOADING:
            raise InvalidTransition(self.state, "fail a save")
        self.state = SaveState.ERROR
        self.error_message = message or "Unknown error."
        logger.info("Save failed: %s", self.error_message)

    def dismiss(self) -> None:
        """error → idle. No-op in any other state."""
        if self.state == SaveState.ERROR:
            self.state = SaveState.IDLE
            self.error_message = None
