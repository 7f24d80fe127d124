"""http2sip entrypoint: HTTP request in, short SIP call out."""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from http2sip.config import ENV_EXAMPLE, ConfigError, load_config
from http2sip.session import SessionState
from http2sip.sip.machine import CallStateMachine
from http2sip.sip.transport import open_transport
from http2sip.web import create_app, start_webapp, stop_webapp

logger = logging.getLogger(__name__)


async def main() -> int:
    load_dotenv()
    try:
        config = load_config()
    except ConfigError as exc:
        print(f"Configuration error: {exc}\n", file=sys.stderr)
        print("Example .env content:\n", file=sys.stderr)
        print(ENV_EXAMPLE, file=sys.stderr)
        return 1

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    loop = asyncio.get_running_loop()

    # Start SIP transport and state machine
    transport = await open_transport(config.account.server, config.account.port)
    session = SessionState(penalty_time=config.penalty_time)
    machine = CallStateMachine(
        transport,
        session=session,
        account=config.account,
        call_number=config.call_number,
        register_expires=config.register_expires,
        reregister_interval=config.reregister_time,
    )
    machine_task = asyncio.create_task(machine.run())

    # Start webapp
    app = create_app(machine)
    runner = await start_webapp(app, config.http_host, config.http_port)

    shutdown = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    shutdown_task = asyncio.create_task(shutdown.wait())
    status = 0
    try:
        await asyncio.wait(
            {machine_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if machine_task.done() and machine_task.exception() is not None:
            logger.critical(
                "SIP state machine crashed", exc_info=machine_task.exception()
            )
            status = 1
        else:
            logger.info("Shutting down...")
    finally:
        shutdown_task.cancel()
        machine_task.cancel()
        await stop_webapp(runner)
        transport.close()
    return status


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
