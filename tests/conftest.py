"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest_asyncio

from http2sip.config import SipAccount
from http2sip.session import SessionState
from http2sip.sip.machine import CallStateMachine
from http2sip.sip.message import SipMessage, new_response
from http2sip.sip.transport import TransportSendFailure

ACCOUNT = SipAccount(user="1000", password="secret", server="sip.example.com")
CALL_NUMBER = "777"
CHALLENGE = 'Digest realm="example.com",nonce="abc123",qop="auth",algorithm=MD5'

Responder = Callable[[SipMessage], list[SipMessage]]


class FakeTransport:
    """Captures send() calls and feeds scripted replies into ``messages``."""

    def __init__(self, responder: Responder | None = None) -> None:
        self.sent: list[SipMessage] = []
        self.messages: asyncio.Queue[SipMessage] = asyncio.Queue()
        self.errors: asyncio.Queue[Exception] = asyncio.Queue()
        self.local_addr = ("10.0.0.5", 5062)
        self.responder = responder
        self.fail_methods: set[str] = set()

    def send(self, msg: SipMessage) -> None:
        if msg.method in self.fail_methods:
            raise TransportSendFailure(f"refusing {msg.method}")
        self.sent.append(msg)
        if self.responder is not None:
            for reply in self.responder(msg):
                self.messages.put_nowait(reply)

    def methods(self) -> list[str]:
        return [m.method or str(m.status) for m in self.sent]

    def requests(self, method: str) -> list[SipMessage]:
        return [m for m in self.sent if m.method == method]


def reply(
    request: SipMessage,
    status: int,
    *,
    method: str | None = None,
    headers: list[tuple[str, str]] | None = None,
) -> SipMessage:
    """Build a response to *request*, optionally for another CSeq method."""
    response = new_response(request, status, to_tag="remote1", extra_headers=headers)
    if method is not None:
        response.set_header("CSeq", f"{request.cseq} {method}")
    return response


def challenge(request: SipMessage, value: str = CHALLENGE) -> SipMessage:
    return reply(request, 401, headers=[("WWW-Authenticate", value)])


def registrar(request: SipMessage) -> list[SipMessage]:
    """Accept every REGISTER straight away."""
    if request.method == "REGISTER":
        return [reply(request, 200)]
    return []


async def until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def settle(delay: float = 0.05) -> None:
    await asyncio.sleep(delay)


@pytest_asyncio.fixture
async def start_machine():
    """Factory that builds a running machine over a scripted FakeTransport."""
    tasks: list[asyncio.Task[None]] = []

    async def _start(
        responder: Responder | None = registrar,
        *,
        penalty_time: float = 60.0,
        **kwargs: Any,
    ) -> tuple[CallStateMachine, FakeTransport]:
        transport = FakeTransport(responder)
        options: dict[str, Any] = {
            "retry_delay": 0.01,
            "registration_wait": 0.5,
            "call_timeout": 5.0,
            "reregister_interval": 60.0,
        }
        options.update(kwargs)
        machine = CallStateMachine(
            transport,
            session=SessionState(penalty_time=penalty_time),
            account=ACCOUNT,
            call_number=CALL_NUMBER,
            **options,
        )
        tasks.append(asyncio.create_task(machine.run()))
        return machine, transport

    yield _start

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
