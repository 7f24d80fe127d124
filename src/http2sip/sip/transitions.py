"""Transition table for the registration and call dialogs.

Every reaction of the state machine is one row keyed by
``(role, current state, event)``.  A missing row means the event is ignored
in that state, which is what makes late timers and retransmitted responses
harmless.
"""

from __future__ import annotations

import dataclasses
from enum import StrEnum

from http2sip.sip.call import CallState, RegistrationState


class Role(StrEnum):
    REGISTRATION = "registration"
    CALL = "call"


class Event(StrEnum):
    REGISTER_DUE = "register_due"  # initial or periodic REGISTER
    DIAL = "dial"  # registration confirmed, INVITE may go out
    RETRY_DUE = "retry_due"  # inter-retry delay elapsed
    CHALLENGE = "challenge"  # 401/407 with retries left
    CHALLENGE_EXHAUSTED = "challenge_exhausted"  # 401/407, budget spent
    AUTH_FAILED = "auth_failed"  # challenge could not be answered
    SEND_FAILED = "send_failed"  # transport refused the request
    PROGRESS = "progress"  # 180/183
    ANSWERED = "answered"  # 2xx to INVITE
    OK = "ok"  # 2xx to REGISTER
    CLOSED = "closed"  # 2xx to CANCEL or BYE
    REQUEST_TERMINATED = "request_terminated"  # 487
    FORBIDDEN = "forbidden"  # 403
    FAILURE = "failure"  # any other final >= 300
    REVOKED = "revoked"  # registration invalidated by a 403 on the call
    REMOTE_BYE = "remote_bye"  # inbound BYE request
    TIMEOUT = "timeout"  # dead-call watchdog


class Action(StrEnum):
    NONE = "none"
    SEND_REGISTER = "send_register"
    AUTHENTICATE = "authenticate"
    RESEND = "resend"
    REGISTRATION_DONE = "registration_done"
    REGISTRATION_FAILED = "registration_failed"
    REGISTRATION_REVOKED = "registration_revoked"
    SEND_INVITE = "send_invite"
    ACK_AND_AUTHENTICATE = "ack_and_authenticate"
    CANCEL = "cancel"
    ACK = "ack"
    ACK_AND_END = "ack_and_end"
    ACK_AND_RESET = "ack_and_reset"
    GIVE_UP = "give_up"
    END = "end"
    CANCEL_AND_END = "cancel_and_end"
    ANSWER = "answer"
    ANSWER_BYE = "answer_bye"


@dataclasses.dataclass(frozen=True)
class Transition:
    next_state: StrEnum
    action: Action


_R = RegistrationState
_C = CallState
_REG = Role.REGISTRATION
_CALL = Role.CALL

TRANSITIONS: dict[tuple[Role, StrEnum, Event], Transition] = {
    # -- registration -------------------------------------------------------
    (_REG, _R.IDLE, Event.REGISTER_DUE): Transition(_R.REGISTERING, Action.SEND_REGISTER),
    (_REG, _R.REGISTERING, Event.REGISTER_DUE): Transition(_R.REGISTERING, Action.SEND_REGISTER),
    (_REG, _R.REGISTERED, Event.REGISTER_DUE): Transition(_R.REGISTERING, Action.SEND_REGISTER),
    (_REG, _R.REGISTERING, Event.CHALLENGE): Transition(_R.REGISTERING, Action.AUTHENTICATE),
    (_REG, _R.REGISTERING, Event.CHALLENGE_EXHAUSTED): Transition(_R.IDLE, Action.REGISTRATION_FAILED),
    (_REG, _R.REGISTERING, Event.AUTH_FAILED): Transition(_R.IDLE, Action.REGISTRATION_FAILED),
    (_REG, _R.REGISTERING, Event.RETRY_DUE): Transition(_R.REGISTERING, Action.RESEND),
    (_REG, _R.REGISTERING, Event.SEND_FAILED): Transition(_R.IDLE, Action.REGISTRATION_FAILED),
    (_REG, _R.REGISTERING, Event.OK): Transition(_R.REGISTERED, Action.REGISTRATION_DONE),
    (_REG, _R.REGISTERING, Event.FORBIDDEN): Transition(_R.IDLE, Action.REGISTRATION_FAILED),
    (_REG, _R.REGISTERING, Event.FAILURE): Transition(_R.IDLE, Action.REGISTRATION_FAILED),
    # a pending REGISTER decides the outcome itself
    (_REG, _R.REGISTERING, Event.REVOKED): Transition(_R.REGISTERING, Action.REGISTRATION_REVOKED),
    (_REG, _R.REGISTERED, Event.OK): Transition(_R.REGISTERED, Action.NONE),
    (_REG, _R.REGISTERED, Event.REVOKED): Transition(_R.IDLE, Action.REGISTRATION_REVOKED),
    # -- call: waiting for registration --------------------------------------
    (_CALL, _C.IDLE, Event.DIAL): Transition(_C.INVITING, Action.SEND_INVITE),
    (_CALL, _C.IDLE, Event.TIMEOUT): Transition(_C.IDLE, Action.END),
    (_CALL, _C.IDLE, Event.REMOTE_BYE): Transition(_C.IDLE, Action.ANSWER),
    # -- call: INVITE outstanding --------------------------------------------
    (_CALL, _C.INVITING, Event.CHALLENGE): Transition(_C.CHALLENGED, Action.ACK_AND_AUTHENTICATE),
    (_CALL, _C.INVITING, Event.CHALLENGE_EXHAUSTED): Transition(_C.REJECTED, Action.GIVE_UP),
    (_CALL, _C.INVITING, Event.SEND_FAILED): Transition(_C.IDLE, Action.END),
    (_CALL, _C.INVITING, Event.PROGRESS): Transition(_C.RINGING, Action.CANCEL),
    (_CALL, _C.INVITING, Event.ANSWERED): Transition(_C.ANSWERED, Action.CANCEL),
    (_CALL, _C.INVITING, Event.REQUEST_TERMINATED): Transition(_C.TERMINATED, Action.ACK_AND_END),
    (_CALL, _C.INVITING, Event.FORBIDDEN): Transition(_C.REJECTED, Action.ACK_AND_RESET),
    (_CALL, _C.INVITING, Event.FAILURE): Transition(_C.REJECTED, Action.ACK_AND_END),
    (_CALL, _C.INVITING, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER_BYE),
    (_CALL, _C.INVITING, Event.TIMEOUT): Transition(_C.CANCELLING, Action.CANCEL_AND_END),
    # -- call: waiting to resend with credentials ----------------------------
    (_CALL, _C.CHALLENGED, Event.RETRY_DUE): Transition(_C.INVITING, Action.RESEND),
    (_CALL, _C.CHALLENGED, Event.AUTH_FAILED): Transition(_C.REJECTED, Action.END),
    (_CALL, _C.CHALLENGED, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER_BYE),
    (_CALL, _C.CHALLENGED, Event.TIMEOUT): Transition(_C.TERMINATED, Action.END),
    # -- call: CANCEL already sent after ringing -----------------------------
    (_CALL, _C.RINGING, Event.PROGRESS): Transition(_C.RINGING, Action.NONE),
    (_CALL, _C.RINGING, Event.ANSWERED): Transition(_C.ANSWERED, Action.NONE),
    (_CALL, _C.RINGING, Event.CLOSED): Transition(_C.TERMINATED, Action.ACK_AND_END),
    (_CALL, _C.RINGING, Event.REQUEST_TERMINATED): Transition(_C.TERMINATED, Action.ACK_AND_END),
    (_CALL, _C.RINGING, Event.FORBIDDEN): Transition(_C.REJECTED, Action.ACK_AND_RESET),
    (_CALL, _C.RINGING, Event.FAILURE): Transition(_C.REJECTED, Action.ACK_AND_END),
    (_CALL, _C.RINGING, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER_BYE),
    (_CALL, _C.RINGING, Event.TIMEOUT): Transition(_C.TERMINATED, Action.END),
    # -- call: CANCEL already sent after answer ------------------------------
    (_CALL, _C.ANSWERED, Event.PROGRESS): Transition(_C.ANSWERED, Action.NONE),
    (_CALL, _C.ANSWERED, Event.ANSWERED): Transition(_C.ANSWERED, Action.NONE),
    (_CALL, _C.ANSWERED, Event.CLOSED): Transition(_C.TERMINATED, Action.ACK_AND_END),
    (_CALL, _C.ANSWERED, Event.REQUEST_TERMINATED): Transition(_C.TERMINATED, Action.ACK_AND_END),
    (_CALL, _C.ANSWERED, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER_BYE),
    (_CALL, _C.ANSWERED, Event.TIMEOUT): Transition(_C.TERMINATED, Action.END),
    # -- call: watchdog CANCEL outstanding -----------------------------------
    (_CALL, _C.CANCELLING, Event.PROGRESS): Transition(_C.CANCELLING, Action.NONE),
    (_CALL, _C.CANCELLING, Event.ANSWERED): Transition(_C.CANCELLING, Action.NONE),
    (_CALL, _C.CANCELLING, Event.CLOSED): Transition(_C.TERMINATED, Action.ACK),
    (_CALL, _C.CANCELLING, Event.REQUEST_TERMINATED): Transition(_C.TERMINATED, Action.ACK),
    (_CALL, _C.CANCELLING, Event.FAILURE): Transition(_C.REJECTED, Action.ACK),
    (_CALL, _C.CANCELLING, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER),
    # -- call: finished, absorb stragglers -----------------------------------
    (_CALL, _C.TERMINATED, Event.CLOSED): Transition(_C.TERMINATED, Action.ACK),
    (_CALL, _C.TERMINATED, Event.REQUEST_TERMINATED): Transition(_C.TERMINATED, Action.ACK),
    (_CALL, _C.TERMINATED, Event.FAILURE): Transition(_C.TERMINATED, Action.ACK),
    (_CALL, _C.TERMINATED, Event.REMOTE_BYE): Transition(_C.TERMINATED, Action.ANSWER),
    (_CALL, _C.REJECTED, Event.REQUEST_TERMINATED): Transition(_C.REJECTED, Action.ACK),
    (_CALL, _C.REJECTED, Event.FORBIDDEN): Transition(_C.REJECTED, Action.ACK),
    (_CALL, _C.REJECTED, Event.FAILURE): Transition(_C.REJECTED, Action.ACK),
    (_CALL, _C.REJECTED, Event.REMOTE_BYE): Transition(_C.REJECTED, Action.ANSWER),
}


def lookup(role: Role, state: StrEnum, event: Event) -> Transition | None:
    return TRANSITIONS.get((role, state, event))
