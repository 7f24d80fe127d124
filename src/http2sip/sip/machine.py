"""SIP user agent that registers and places short trigger calls.

A single processing loop owns all dialog state.  Inbound messages, transport
errors and internal commands (timers, the call placement task) arrive on
three queues; each is classified into an ``Event`` and applied through the
transition table in ``http2sip.sip.transitions``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from http2sip.config import SipAccount
from http2sip.session import SessionState
from http2sip.sip import auth
from http2sip.sip.call import (
    CallSession,
    CallState,
    RegistrationSession,
    RegistrationState,
)
from http2sip.sip.message import (
    SipMessage,
    extract_branch,
    generate_cseq,
    generate_tag,
    new_ack,
    new_cancel,
    new_request,
    new_response,
    reason_phrase,
    renew_request,
)
from http2sip.sip.sdp import build_sdp_offer
from http2sip.sip.transitions import Action, Event, Role, lookup
from http2sip.sip.transport import TransportSendFailure

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "INVITE, ACK, BYE, CANCEL, UPDATE, INFO, NOTIFY, OPTIONS"
USER_AGENT = "http2sip"

REGISTER_AUTH_RETRIES = 3
# Refreshes usually only need a new nonce
REREGISTER_AUTH_RETRIES = 1
INVITE_AUTH_RETRIES = 3
RETRY_DELAY = 1.0  # pause before resending with credentials
REGISTRATION_WAIT = 15.0  # max wait for registration before giving up a call
CALL_TIMEOUT = 30.0  # dead-call watchdog


class CallRequest(StrEnum):
    STARTED = "started"
    RATE_LIMITED = "rate_limited"
    IN_PROGRESS = "in_progress"


class Transport(Protocol):
    messages: asyncio.Queue[SipMessage]
    errors: asyncio.Queue[Exception]
    local_addr: tuple[str, int]

    def send(self, msg: SipMessage) -> None: ...


def sip_uri(user: str, host: str, port: int = 5060) -> str:
    userinfo = f"{user}@" if user else ""
    hostport = host if port == 5060 else f"{host}:{port}"
    return f"sip:{userinfo}{hostport}"


class CallStateMachine:
    """Registration and call control against one registrar."""

    def __init__(
        self,
        transport: Transport,
        *,
        session: SessionState,
        account: SipAccount,
        call_number: str,
        register_expires: int = 300,
        reregister_interval: float = 240.0,
        invite_auth_retries: int = INVITE_AUTH_RETRIES,
        retry_delay: float = RETRY_DELAY,
        registration_wait: float = REGISTRATION_WAIT,
        call_timeout: float = CALL_TIMEOUT,
    ) -> None:
        self.session = session
        self.registration = RegistrationSession(reregister_interval=reregister_interval)
        self.call: CallSession | None = None
        self._transport = transport
        self._account = account
        self._call_number = call_number
        self._register_expires = register_expires
        self._invite_auth_retries = invite_auth_retries
        self._retry_delay = retry_delay
        self._registration_wait = registration_wait
        self._call_timeout = call_timeout
        self._cseq = generate_cseq()
        self._attempt = 0
        self._commands: asyncio.Queue[tuple[Role, Event, Any]] = asyncio.Queue()
        self._retry_timers: dict[Role, asyncio.TimerHandle] = {}
        self._watchdog: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._actions: dict[Action, Callable[[Role, SipMessage | None], None]] = {
            Action.NONE: lambda _role, _msg: None,
            Action.SEND_REGISTER: self._send_register,
            Action.AUTHENTICATE: self._authenticate,
            Action.RESEND: self._resend,
            Action.REGISTRATION_DONE: self._registration_done,
            Action.REGISTRATION_FAILED: self._registration_failed,
            Action.REGISTRATION_REVOKED: self._registration_revoked,
            Action.SEND_INVITE: self._send_invite,
            Action.ACK_AND_AUTHENTICATE: self._ack_and_authenticate,
            Action.CANCEL: self._cancel,
            Action.ACK: self._ack,
            Action.ACK_AND_END: self._ack_and_end,
            Action.ACK_AND_RESET: self._ack_and_reset,
            Action.GIVE_UP: self._give_up,
            Action.END: self._end,
            Action.CANCEL_AND_END: self._cancel_and_end,
            Action.ANSWER: self._answer,
            Action.ANSWER_BYE: self._answer_bye,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Process messages, errors and commands until cancelled."""
        loop = asyncio.get_running_loop()
        self._spawn(self._refresh_registration())
        self._post(Role.REGISTRATION, Event.REGISTER_DUE)

        sources: dict[str, asyncio.Queue[Any]] = {
            "command": self._commands,
            "message": self._transport.messages,
            "error": self._transport.errors,
        }
        getters = {name: loop.create_task(q.get()) for name, q in sources.items()}
        try:
            while True:
                await asyncio.wait(
                    getters.values(), return_when=asyncio.FIRST_COMPLETED
                )
                # ready queues drain in fixed order: command, message, error
                for name, queue in sources.items():
                    getter = getters[name]
                    if not getter.done():
                        continue
                    item = getter.result()
                    getters[name] = loop.create_task(queue.get())
                    try:
                        if name == "command":
                            self._handle_command(*item)
                        elif name == "message":
                            self.handle_message(item)
                        else:
                            logger.warning("SIP recv failed: %s", item)
                    except auth.RandomnessFailure:
                        raise
                    except Exception:
                        logger.exception("Failed to process SIP %s", name)
        finally:
            for getter in getters.values():
                getter.cancel()
            self._shutdown()

    def place_call(self, number: str | None = None) -> CallRequest:
        """Start a trigger call unless one is running or the cooldown is active."""
        if self.session.rate_limited:
            return CallRequest.RATE_LIMITED
        if not self.session.try_begin_call():
            return CallRequest.IN_PROGRESS
        target = number or self._call_number
        self._attempt += 1
        attempt = self._attempt
        logger.info("Will call %s", target)

        loop = asyncio.get_running_loop()
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._watchdog = loop.call_later(
            self._call_timeout, self._post, Role.CALL, Event.TIMEOUT, attempt
        )
        self._spawn(self._dial_when_registered(target, attempt))
        return CallRequest.STARTED

    def handle_message(self, msg: SipMessage) -> None:
        """Apply one inbound message to the state machine."""
        if msg.is_response:
            logger.info(
                "SIP MESSAGE: %s -> %d (%s)",
                msg.cseq_method,
                msg.status,
                reason_phrase(msg.status),
            )
        else:
            logger.info("SIP MESSAGE: %s request", msg.method)
        classified = self._classify(msg)
        if classified is not None:
            role, event = classified
            self._dispatch(role, event, msg)

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    def _post(self, role: Role, event: Event, arg: Any = None) -> None:
        self._commands.put_nowait((role, event, arg))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _handle_command(self, role: Role, event: Event, arg: Any) -> None:
        if event == Event.DIAL:
            target, attempt = arg
            if not self.session.call_in_progress or attempt != self._attempt:
                logger.info("Call attempt %d no longer wanted, not dialing", attempt)
                return
            self.call = CallSession(
                attempt=attempt,
                target_number=target,
                auth_retries_remaining=self._invite_auth_retries,
            )
        elif event == Event.TIMEOUT:
            if self.call is None or self.call.attempt != arg:
                if arg == self._attempt and self.session.call_in_progress:
                    logger.warning("Seems calling timed out, resetting states")
                    self.session.end_call()
                return
            if self.session.call_in_progress:
                logger.warning("Seems calling timed out, resetting states")
        self._dispatch(role, event, None)

    def _state(self, role: Role) -> StrEnum:
        if role == Role.REGISTRATION:
            return self.registration.state
        return self.call.state if self.call is not None else CallState.IDLE

    def _set_state(self, role: Role, state: StrEnum) -> None:
        if role == Role.REGISTRATION:
            self.registration.state = state  # type: ignore[assignment]
        elif self.call is not None:
            self.call.state = state  # type: ignore[assignment]

    def _dispatch(self, role: Role, event: Event, msg: SipMessage | None) -> None:
        state = self._state(role)
        transition = lookup(role, state, event)
        if transition is None:
            logger.debug("Ignoring %s in %s state %s", event, role, state)
            return
        logger.debug(
            "%s: %s --%s--> %s (%s)",
            role,
            state,
            event,
            transition.next_state,
            transition.action,
        )
        self._set_state(role, transition.next_state)
        self._actions[transition.action](role, msg)

    def _classify(self, msg: SipMessage) -> tuple[Role, Event] | None:
        if not msg.is_response:
            if msg.method == "BYE":
                logger.info("%s: Remote hangup!", msg.method)
                return Role.CALL, Event.REMOTE_BYE
            logger.debug("Ignoring %s request", msg.method)
            return None

        method = msg.cseq_method
        reg = self.registration
        dialog: RegistrationSession | CallSession
        if msg.cseq == reg.sequence_number and method == "REGISTER":
            role, dialog = Role.REGISTRATION, reg
        elif (
            self.call is not None
            and msg.cseq == self.call.sequence_number
            and method in ("INVITE", "CANCEL", "BYE")
        ):
            role, dialog = Role.CALL, self.call
        else:
            logger.debug(
                "Response %d for unknown CSeq %d %s", msg.status, msg.cseq, method
            )
            return None
        # RFC 3261 §17.1.3: the top Via branch names the client transaction
        if dialog.request is None or extract_branch(msg) != extract_branch(
            dialog.request
        ):
            logger.debug("Response %d does not match our transaction", msg.status)
            return None
        retries = dialog.auth_retries_remaining

        status = msg.status
        if method in ("CANCEL", "BYE"):
            if 200 <= status < 300:
                return role, Event.CLOSED
            logger.debug("Ignoring %d to %s", status, method)
            return None
        if status in (401, 407):
            return role, Event.CHALLENGE if retries > 0 else Event.CHALLENGE_EXHAUSTED
        if status in (180, 183) and method == "INVITE":
            return role, Event.PROGRESS
        if status < 200:
            return None
        if status < 300:
            return role, Event.OK if method == "REGISTER" else Event.ANSWERED
        if status == 403:
            return role, Event.FORBIDDEN
        if status == 487:
            return role, Event.REQUEST_TERMINATED
        return role, Event.FAILURE

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _next_cseq(self) -> int:
        self._cseq += 1
        return self._cseq

    def _dialog(self, role: Role) -> RegistrationSession | CallSession:
        if role == Role.REGISTRATION:
            return self.registration
        assert self.call is not None
        return self.call

    def _send(self, msg: SipMessage, role: Role | None = None) -> bool:
        """Send *msg*; for dialog requests a failure rolls the dialog back."""
        try:
            self._transport.send(msg)
        except TransportSendFailure as exc:
            logger.warning("SIP send failed: %s", exc)
            if role is not None:
                self._dispatch(role, Event.SEND_FAILED, None)
            return False
        return True

    def _contact(self) -> str:
        host, port = self._transport.local_addr
        return f"{sip_uri(self._account.user, host, port)};ob"

    def _cancel_retry(self, role: Role) -> None:
        timer = self._retry_timers.pop(role, None)
        if timer is not None:
            timer.cancel()

    def _schedule_retry(self, role: Role) -> None:
        self._cancel_retry(role)
        loop = asyncio.get_running_loop()
        self._retry_timers[role] = loop.call_later(
            self._retry_delay, self._post, role, Event.RETRY_DUE
        )

    async def _refresh_registration(self) -> None:
        resends = 1
        while True:
            await asyncio.sleep(self.registration.reregister_interval)
            logger.info("RE-REGISTER number: %d", resends)
            resends += 1
            self._post(Role.REGISTRATION, Event.REGISTER_DUE)

    async def _dial_when_registered(self, target: str, attempt: int) -> None:
        if not self.session.registered:
            logger.info("Not registered, waiting up to %.0fs", self._registration_wait)
        try:
            await asyncio.wait_for(
                self.session.wait_registered(), self._registration_wait
            )
        except TimeoutError:
            logger.warning("Timeout waiting for registration, calling failed")
            if attempt == self._attempt:
                self.session.end_call()
            return
        self._post(Role.CALL, Event.DIAL, (target, attempt))

    def _shutdown(self) -> None:
        for role in list(self._retry_timers):
            self._cancel_retry(role)
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Actions: registration
    # ------------------------------------------------------------------

    def _send_register(self, role: Role, msg: SipMessage | None) -> None:
        reg = self.registration
        self._cancel_retry(role)
        cseq = self._next_cseq()
        if reg.request is None:
            account = self._account
            reg.request = new_request(
                "REGISTER",
                sip_uri("", account.server, account.port),
                from_uri=sip_uri(account.user, account.server),
                to_uri=sip_uri(account.user, account.server, account.port),
                contact=self._contact(),
                local_addr=self._transport.local_addr,
                cseq=cseq,
                extra_headers=[
                    ("Expires", str(self._register_expires)),
                    ("Allow", ALLOWED_METHODS),
                    ("User-Agent", USER_AGENT),
                ],
            )
            reg.auth_retries_remaining = REGISTER_AUTH_RETRIES
        else:
            reg.request = renew_request(reg.request, cseq)
            reg.auth_retries_remaining = REREGISTER_AUTH_RETRIES
        reg.sequence_number = cseq
        self._send(reg.request, role)

    def _registration_done(self, role: Role, msg: SipMessage | None) -> None:
        expires = msg.header("Expires") if msg is not None else None
        logger.info("Registered! Expires: %s", expires or self._register_expires)
        self.session.set_registered(True)

    def _registration_failed(self, role: Role, msg: SipMessage | None) -> None:
        self._cancel_retry(role)
        self.session.set_registered(False)
        if msg is not None and msg.status in (401, 407):
            logger.warning(
                "Number of authorization requests exceeded (wrong password?)"
            )
        elif msg is not None:
            logger.warning("Registration rejected: %d %s", msg.status, msg.reason)
        else:
            logger.warning("Registration attempt abandoned")

    def _registration_revoked(self, role: Role, msg: SipMessage | None) -> None:
        self.session.set_registered(False)
        if self.registration.state == RegistrationState.REGISTERING:
            logger.warning("Call forbidden, waiting for the pending REGISTER")
        else:
            logger.warning("Call forbidden, registration dropped until next refresh")

    def _authenticate(self, role: Role, msg: SipMessage | None) -> None:
        """Prepare the challenged request with credentials and arm the retry."""
        assert msg is not None
        dialog = self._dialog(role)
        if role == Role.REGISTRATION:
            self.session.set_registered(False)
        assert dialog.request is not None

        www = msg.header("WWW-Authenticate")
        proxy = msg.header("Proxy-Authenticate")
        if www:
            header_name, challenge_value = "Authorization", www
        elif proxy:
            header_name, challenge_value = "Proxy-Authorization", proxy
        else:
            logger.warning("WWW-Authenticate or Proxy-Authenticate header not found")
            self._dispatch(role, Event.AUTH_FAILED, None)
            return

        dialog.auth_retries_remaining -= 1
        try:
            challenge = auth.parse_challenge(challenge_value)
            if challenge.nonce != dialog.nonce:
                dialog.nonce = challenge.nonce
                dialog.nonce_count = 0
            dialog.nonce_count += 1
            request = renew_request(dialog.request, self._next_cseq())
            credentials = auth.authorize(
                challenge,
                username=self._account.user,
                password=self._account.password,
                uri=request.uri,
                method=request.method,
                nonce_count=dialog.nonce_count,
            )
            header_value = auth.build_authorization_header(credentials, challenge)
        except auth.DigestError as exc:
            logger.warning("Cannot answer %s challenge: %s", role, exc)
            self._dispatch(role, Event.AUTH_FAILED, None)
            return

        request.set_header(header_name, header_value)
        dialog.request = request
        dialog.sequence_number = request.cseq
        logger.info(
            "Resending %s with credentials in %.1fs (%d retries left)",
            request.method,
            self._retry_delay,
            dialog.auth_retries_remaining,
        )
        self._schedule_retry(role)

    def _resend(self, role: Role, msg: SipMessage | None) -> None:
        self._retry_timers.pop(role, None)
        dialog = self._dialog(role)
        assert dialog.request is not None
        self._send(dialog.request, role)

    # ------------------------------------------------------------------
    # Actions: call
    # ------------------------------------------------------------------

    def _send_invite(self, role: Role, msg: SipMessage | None) -> None:
        call = self.call
        assert call is not None
        account = self._account
        local_ip = self._transport.local_addr[0]
        target = sip_uri(call.target_number, account.server, account.port)
        cseq = self._next_cseq()
        call.request = new_request(
            "INVITE",
            target,
            from_uri=sip_uri(account.user, account.server),
            to_uri=target,
            contact=self._contact(),
            local_addr=self._transport.local_addr,
            cseq=cseq,
            extra_headers=[
                ("Allow", ALLOWED_METHODS),
                ("User-Agent", USER_AGENT),
            ],
            body=build_sdp_offer(local_ip),
        )
        call.sequence_number = cseq
        logger.info("Calling %s...", call.target_number)
        self._send(call.request, role)

    def _send_ack(self, msg: SipMessage | None) -> None:
        call = self.call
        if msg is None or call is None or call.request is None:
            return
        self._send(new_ack(msg, call.request))

    def _ack(self, role: Role, msg: SipMessage | None) -> None:
        self._send_ack(msg)

    def _ack_and_authenticate(self, role: Role, msg: SipMessage | None) -> None:
        # RFC 3261 §17.1.1.3: the challenged INVITE transaction is closed
        # with an ACK before the authenticated INVITE starts a new one
        self._send_ack(msg)
        self._authenticate(role, msg)

    def _cancel(self, role: Role, msg: SipMessage | None) -> None:
        call = self.call
        assert call is not None and call.request is not None
        if msg is None:
            logger.info("Cancelling stalled call")
        elif msg.status < 200:
            logger.info("Probably ringing, cancelling call")
        else:
            logger.info("Answered, cancelling call")
        self._send(new_cancel(call.request))

    def _end(self, role: Role, msg: SipMessage | None) -> None:
        self._cancel_retry(Role.CALL)
        if self._watchdog is not None:
            self._watchdog.cancel()
            self._watchdog = None
        if self.session.call_in_progress:
            logger.info("Call finished (%s)", self.call.state if self.call else "idle")
        self.session.end_call()

    def _ack_and_end(self, role: Role, msg: SipMessage | None) -> None:
        self._send_ack(msg)
        self._end(role, msg)

    def _give_up(self, role: Role, msg: SipMessage | None) -> None:
        logger.warning("Number of authorization requests exceeded (wrong password?)")
        self._ack_and_end(role, msg)

    def _ack_and_reset(self, role: Role, msg: SipMessage | None) -> None:
        logger.warning("Call forbidden, registration must be renewed")
        self._send_ack(msg)
        self._end(role, msg)
        self.session.set_registered(False)
        self._dispatch(Role.REGISTRATION, Event.REVOKED, msg)

    def _cancel_and_end(self, role: Role, msg: SipMessage | None) -> None:
        self._cancel(role, msg)
        self._end(role, msg)

    def _answer(self, role: Role, msg: SipMessage | None) -> None:
        assert msg is not None
        # RFC 3261 §15.1.2: a BYE is always answered with 2xx
        self._send(new_response(msg, 200, "OK", to_tag=generate_tag()))

    def _answer_bye(self, role: Role, msg: SipMessage | None) -> None:
        self._answer(role, msg)
        self._end(role, msg)
