# peerlink/server.py
import asyncio
import logging
import websockets
from websockets.exceptions import ConnectionClosedOK

from .protocol import CLIENT_EVENTS, ProtocolError, decode_event
from .registry import IdentityRegistry
from .router import SignalingRouter
from .shared_state import shutdown_event

logger = logging.getLogger(__name__)


def connection_handle(websocket):
    """Transport-assigned identifier of a websocket connection."""
    return websocket.id.hex


class RelayServer:
    def __init__(self, config_manager):
        self.config_manager = config_manager
        self.registry = IdentityRegistry(id_length=config_manager.get("id_length"))
        self.router = SignalingRouter(self.registry)
        self._server = None

    async def handle_connection(self, websocket):
        """Runs for the lifetime of one client connection."""
        handle = connection_handle(websocket)
        peer_id = None
        try:
            peer_id = await self.router.connect(handle, websocket)
            async for message in websocket:
                if shutdown_event.is_set():
                    break
                await self.handle_message(handle, message)
        except ConnectionClosedOK:
            logger.info(f"Connection {peer_id or handle} closed normally.")
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Connection {peer_id or handle} closed with error: {e}")
        except asyncio.CancelledError:
            logger.debug(f"Handler for {peer_id or handle} cancelled.")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in connection handler for {peer_id or handle}: {e}")
        finally:
            await self.router.disconnect(handle)

    async def handle_message(self, handle, message):
        """Decode and route a single frame. Faults are logged, never propagated."""
        try:
            event, data = decode_event(message, allowed=CLIENT_EVENTS)
        except ProtocolError as e:
            logger.warning(f"Ignoring malformed frame from {self.router.label(handle)}: {e}")
            return
        try:
            await self.router.dispatch(handle, event, data)
        except websockets.exceptions.ConnectionClosed:
            raise
        except Exception as e:
            logger.exception(f"Error handling '{event}' from {self.router.label(handle)}: {e}")

    async def start(self):
        host = self.config_manager.get("host")
        port = self.config_manager.get("port")
        self._server = await websockets.serve(
            self.handle_connection,
            host,
            port,
            ping_interval=self.config_manager.get("ping_interval"),
            ping_timeout=self.config_manager.get("ping_timeout"),
            max_size=self.config_manager.get("max_size"),
        )
        logger.info(f"Signaling relay listening on ws://{host}:{port}")
        return self._server

    async def stop(self):
        if self._server is None:
            return
        logger.info("Closing active sessions...")
        close_tasks = []
        for handle in self.registry.live_handles():
            ws = self.router.get_websocket(handle)
            if ws is not None:
                close_tasks.append(asyncio.create_task(ws.close(code=1001, reason="Server shutting down")))
        if close_tasks:
            await asyncio.gather(*close_tasks, return_exceptions=True)
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        logger.info("Signaling relay stopped.")

    async def serve_forever(self):
        await self.start()
        try:
            await shutdown_event.wait()
        finally:
            await self.stop()
