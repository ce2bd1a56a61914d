from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from app.api.models import AuthorizationStatus, PendingAuthorization


class AuthorizationFSM(StateMachine):
    """FSM wrapper around a PendingAuthorization.

    pending -> confirmed -> consumed
    pending -> expired

    Transitions are only guarded here; the workflow decides when to fire them and
    owns the record.
    """

    pending = State(AuthorizationStatus.pending.value, value=AuthorizationStatus.pending.value, initial=True)
    confirmed = State(AuthorizationStatus.confirmed.value, value=AuthorizationStatus.confirmed.value)
    consumed = State(AuthorizationStatus.consumed.value, value=AuthorizationStatus.consumed.value, final=True)
    expired = State(AuthorizationStatus.expired.value, value=AuthorizationStatus.expired.value, final=True)

    confirm = pending.to(confirmed)
    consume = confirmed.to(consumed)
    expire = pending.to(expired)

    def __init__(self, authorization: PendingAuthorization):
        self.authorization = authorization
        super().__init__(start_value=authorization.status.value)

    def sync_status_to_model(self) -> None:
        self.authorization.status = AuthorizationStatus(str(self.current_state.value))


def transition(authorization: PendingAuthorization, event: str) -> bool:
    """Fire `event` on `authorization` in place. Returns False if the transition isn't allowed."""

    fsm = AuthorizationFSM(authorization)
    try:
        fsm.send(event)
    except TransitionNotAllowed:
        return False
    fsm.sync_status_to_model()
    return True
