# main.py
import argparse
import asyncio
import logging
import signal
import sys

from peerlink.config_manager import ConfigManager
from peerlink.server import RelayServer
from peerlink.shared_state import shutdown_event


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="peerlink-relay", description="PeerLink signaling relay")
    p.add_argument("--host", default=None, help="Interface to bind (default from config)")
    p.add_argument("--port", type=int, default=None, help="Port to listen on (default from config)")
    p.add_argument("--config", default=None, help="Path to a JSON config file")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return p.parse_args(argv)


def handle_loop_exception(loop, context):
    # Uncaught task faults must not take the relay down
    exc = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exc is not None:
        logging.error(f"{message}: {exc}", exc_info=exc)
    else:
        logging.error(message)


async def main(args):
    config_manager = ConfigManager(args.config)
    config_manager.initialize()
    config_manager.update({"host": args.host, "port": args.port, "log_level": args.log_level})
    logging.getLogger().setLevel(config_manager.get("log_level"))

    loop = asyncio.get_running_loop()
    loop.set_exception_handler(handle_loop_exception)
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    relay = RelayServer(config_manager)
    try:
        await relay.serve_forever()
    except OSError as e:
        logging.critical(f"Failed to start signaling relay: {e}")
        return 1
    logging.info("Relay fully shut down.")
    return 0


def run(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s", stream=sys.stdout)
    try:
        return asyncio.run(main(args))
    except KeyboardInterrupt:
        logging.info("Shutdown initiated by user (Ctrl+C)...")
        return 0


if __name__ == "__main__":
    sys.exit(run())
