"""UDP transport delivering parsed SIP messages to a queue."""

from __future__ import annotations

import asyncio
import logging

from http2sip.sip.message import SipMessage, parse_message

logger = logging.getLogger(__name__)


class TransportSendFailure(Exception):
    """A message could not be handed to the socket."""


class SipTransport(asyncio.DatagramProtocol):
    """Connected UDP endpoint talking to a single registrar.

    Inbound messages land on ``messages`` in delivery order and socket errors
    on ``errors``.  ``send`` never waits for a response.
    """

    def __init__(self) -> None:
        self._transport: asyncio.DatagramTransport | None = None
        self.messages: asyncio.Queue[SipMessage] = asyncio.Queue()
        self.errors: asyncio.Queue[Exception] = asyncio.Queue()
        self.local_addr: tuple[str, int] = ("0.0.0.0", 0)

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        sockname = transport.get_extra_info("sockname")
        if sockname is not None:
            self.local_addr = (sockname[0], sockname[1])
        logger.info("SIP transport bound to %s:%d", *self.local_addr)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("Connection lost: %s", exc)
            self.errors.put_nowait(exc)
        self._transport = None

    def error_received(self, exc: Exception) -> None:
        logger.debug("Socket error: %s", exc)
        self.errors.put_nowait(exc)

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        # CRLF keepalive (RFC 5626 §4.4.1) from the registrar
        if not data.strip(b"\r\n "):
            logger.debug("Keepalive CRLF from %s", addr)
            return

        logger.debug("Raw from %s:\n%s", addr, data.decode("utf-8", errors="replace"))
        try:
            msg = parse_message(data)
        except Exception:
            logger.exception("Failed to parse SIP message from %s", addr)
            return
        self.messages.put_nowait(msg)

    def send(self, msg: SipMessage) -> None:
        """Encode and send one message.

        Raises:
            TransportSendFailure: the socket is closed or rejected the datagram.
        """
        if self._transport is None or self._transport.is_closing():
            raise TransportSendFailure("SIP transport is not connected")
        data = msg.encode()
        logger.debug("Sending:\n%s", data.decode("utf-8", errors="replace"))
        try:
            self._transport.sendto(data)
        except OSError as exc:
            raise TransportSendFailure(f"SIP send failed: {exc}") from exc

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()


async def open_transport(
    host: str, port: int = 5060, *, local_port: int = 0
) -> SipTransport:
    """Open a UDP endpoint connected to the registrar at *host*:*port*.

    Connecting the socket lets the OS pick the outbound interface, so the
    bound address is the one to advertise in Via, Contact and SDP.
    """
    loop = asyncio.get_running_loop()
    protocol = SipTransport()
    local_addr = ("0.0.0.0", local_port) if local_port else None
    await loop.create_datagram_endpoint(
        lambda: protocol, local_addr=local_addr, remote_addr=(host, port)
    )
    logger.info("Connected to registrar %s:%d", host, port)
    return protocol
