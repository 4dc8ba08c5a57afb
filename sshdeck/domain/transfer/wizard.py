"""
Transfer wizard as a finite state machine

    select_session → select_direction → select_source → select_target
        → confirm → confirmed

Abort leads to aborted from any open step; Back returns one step and
clears the choice made there and everything after it. advance() is pure:
it never mutates its input and performs no I/O.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union

from ...core.exceptions import WizardError
from .models import Side, TransferDirection, TransferRequest


class WizardStep(str, Enum):
    SELECT_SESSION = "select_session"
    SELECT_DIRECTION = "select_direction"
    SELECT_SOURCE = "select_source"
    SELECT_TARGET = "select_target"
    CONFIRM = "confirm"
    CONFIRMED = "confirmed"
    ABORTED = "aborted"

    @property
    def is_final(self) -> bool:
        return self in (WizardStep.CONFIRMED, WizardStep.ABORTED)


_ORDER = [
    WizardStep.SELECT_SESSION,
    WizardStep.SELECT_DIRECTION,
    WizardStep.SELECT_SOURCE,
    WizardStep.SELECT_TARGET,
    WizardStep.CONFIRM,
]


@dataclass(frozen=True)
class WizardState:
    step: WizardStep = WizardStep.SELECT_SESSION
    session_id: Optional[str] = None
    direction: Optional[TransferDirection] = None
    source: Optional[str] = None
    source_is_dir: bool = False
    target_dir: Optional[str] = None


# Actions

@dataclass(frozen=True)
class SessionChosen:
    session_id: str


@dataclass(frozen=True)
class DirectionChosen:
    direction: TransferDirection


@dataclass(frozen=True)
class SourceChosen:
    path: str
    is_dir: bool = False


@dataclass(frozen=True)
class TargetChosen:
    path: str


@dataclass(frozen=True)
class Confirmed:
    pass


@dataclass(frozen=True)
class Back:
    pass


@dataclass(frozen=True)
class Abort:
    pass


Action = Union[SessionChosen, DirectionChosen, SourceChosen, TargetChosen, Confirmed, Back, Abort]

_EXPECTED = {
    WizardStep.SELECT_SESSION: SessionChosen,
    WizardStep.SELECT_DIRECTION: DirectionChosen,
    WizardStep.SELECT_SOURCE: SourceChosen,
    WizardStep.SELECT_TARGET: TargetChosen,
    WizardStep.CONFIRM: Confirmed,
}


def start(session_id: Optional[str] = None) -> WizardState:
    """Initial state; a preselected session skips the first step"""
    if session_id:
        return WizardState(step=WizardStep.SELECT_DIRECTION, session_id=session_id)
    return WizardState()


def advance(state: WizardState, action: Action) -> WizardState:
    """
    Apply an action to a wizard state.

    Raises:
        WizardError: If the action does not fit the current step
    """
    if state.step.is_final:
        raise WizardError(f"Wizard already {state.step.value}")

    if isinstance(action, Abort):
        return replace(state, step=WizardStep.ABORTED)
    if isinstance(action, Back):
        return _back(state)

    expected = _EXPECTED[state.step]
    if not isinstance(action, expected):
        raise WizardError(f"{type(action).__name__} is not valid at {state.step.value}")

    if isinstance(action, SessionChosen):
        if not action.session_id:
            raise WizardError("No session selected")
        return replace(state, step=WizardStep.SELECT_DIRECTION, session_id=action.session_id)

    if isinstance(action, DirectionChosen):
        return replace(state, step=WizardStep.SELECT_SOURCE, direction=TransferDirection(action.direction))

    if isinstance(action, SourceChosen):
        if not action.path:
            raise WizardError("No source selected")
        return replace(state, step=WizardStep.SELECT_TARGET, source=action.path, source_is_dir=action.is_dir)

    if isinstance(action, TargetChosen):
        if not action.path:
            raise WizardError("No target directory selected")
        return replace(state, step=WizardStep.CONFIRM, target_dir=action.path)

    return replace(state, step=WizardStep.CONFIRMED)


def _back(state: WizardState) -> WizardState:
    index = _ORDER.index(state.step)
    if index == 0:
        return replace(state, step=WizardStep.ABORTED)
    previous = _ORDER[index - 1]
    if previous is WizardStep.SELECT_SESSION:
        return WizardState()
    if previous is WizardStep.SELECT_DIRECTION:
        return WizardState(step=previous, session_id=state.session_id)
    if previous is WizardStep.SELECT_SOURCE:
        return replace(state, step=previous, source=None, source_is_dir=False, target_dir=None)
    return replace(state, step=previous, target_dir=None)


def browser_side(state: WizardState) -> Optional[Side]:
    """Which filesystem the current step browses, if any"""
    if state.direction is None:
        return None
    if state.step is WizardStep.SELECT_SOURCE:
        return state.direction.source_side
    if state.step is WizardStep.SELECT_TARGET:
        return state.direction.target_side
    return None


def to_request(state: WizardState) -> TransferRequest:
    """
    Build the transfer request of a confirmed wizard.

    Raises:
        WizardError: If the wizard is not confirmed
    """
    if state.step is not WizardStep.CONFIRMED:
        raise WizardError(f"Wizard is at {state.step.value}, not confirmed")
    return TransferRequest(
        session_id=state.session_id,
        direction=state.direction,
        source=state.source,
        target_dir=state.target_dir,
    )
