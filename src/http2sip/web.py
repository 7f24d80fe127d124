"""HTTP trigger endpoint served by aiohttp."""

from __future__ import annotations

import logging

from aiohttp import web

from http2sip.config import format_duration
from http2sip.sip.machine import CallRequest, CallStateMachine

logger = logging.getLogger(__name__)

_machine_key = web.AppKey("machine", CallStateMachine)


async def _open_handler(request: web.Request) -> web.Response:
    machine = request.app[_machine_key]
    client = request.headers.get("X-Forwarded-For") or request.remote
    logger.info(
        "HTTP %s: %s (%s) -> %s",
        request.method,
        client,
        request.headers.get("User-Agent", ""),
        request.path,
    )

    result = machine.place_call()
    if result == CallRequest.RATE_LIMITED:
        logger.info("Penalty active, ignoring request")
        penalty = format_duration(machine.session.penalty_time)
        return web.Response(
            status=429,
            text=f"ERROR: Too fast (1 per {penalty}), maybe the gate is already open?",
        )
    if result == CallRequest.IN_PROGRESS:
        logger.info("Call already in progress, ignoring request")
        return web.Response(
            status=409, text="ERROR: Someone is already opening the gate right now"
        )
    return web.Response(text="Opening...")


def create_app(machine: CallStateMachine) -> web.Application:
    app = web.Application()
    app[_machine_key] = machine
    app.router.add_route("*", "/open", _open_handler)
    return app


async def start_webapp(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Listening on %s:%d", host, port)
    return runner


async def stop_webapp(runner: web.AppRunner) -> None:
    await runner.cleanup()
