"""Registration and call dialog records."""

from __future__ import annotations

import dataclasses
from enum import StrEnum

from http2sip.sip.message import SipMessage


class RegistrationState(StrEnum):
    IDLE = "idle"
    REGISTERING = "registering"
    REGISTERED = "registered"


class CallState(StrEnum):
    IDLE = "idle"  # placement accepted, waiting for registration
    INVITING = "inviting"  # INVITE sent, no final response yet
    CHALLENGED = "challenged"  # 401/407 ACKed, authenticated INVITE pending
    RINGING = "ringing"  # provisional response seen, CANCEL sent
    ANSWERED = "answered"  # 2xx to INVITE seen, CANCEL sent
    CANCELLING = "cancelling"  # watchdog gave up, CANCEL sent
    REJECTED = "rejected"  # final failure
    TERMINATED = "terminated"  # CANCEL confirmed, 487 or remote BYE


@dataclasses.dataclass
class RegistrationSession:
    reregister_interval: float
    request: SipMessage | None = None
    sequence_number: int = 0
    auth_retries_remaining: int = 0
    state: RegistrationState = RegistrationState.IDLE
    nonce: str = ""
    nonce_count: int = 0


@dataclasses.dataclass
class CallSession:
    attempt: int
    target_number: str
    auth_retries_remaining: int
    request: SipMessage | None = None
    sequence_number: int = 0
    state: CallState = CallState.IDLE
    nonce: str = ""
    nonce_count: int = 0
