import asyncio
import logging

from .channel import ChannelMultiplexer
from .connection import SignalingClient
from .handshake import HandshakeController

logger = logging.getLogger(__name__)


class PeerSession:
    def __init__(self, config_manager, negotiator_factory, ui_queue=None, display_name="", connect=None):
        """
        Wires the relay connection, the call state machine and the data channel
        for one client.
        Args:
            config_manager: Instance of ConfigManager.
            negotiator_factory: Callable(initiator, emit) -> Negotiator.
            ui_queue: asyncio.Queue for everything the UI should show.
            display_name: Name announced to the peers we call.
            connect: Optional override for websockets.connect.
        """
        self.config_manager = config_manager
        self.ui_queue = ui_queue if ui_queue is not None else asyncio.Queue()
        self.channel = ChannelMultiplexer(self.ui_queue, chunk_size=config_manager.get("chunk_size"))
        self.relay = SignalingClient(
            config_manager.get("relay_url"),
            on_event=self._on_relay_event,
            ui_queue=self.ui_queue,
            reconnection_attempts=config_manager.get("reconnection_attempts"),
            reconnection_delay=config_manager.get("reconnection_delay"),
            connect=connect,
        )
        self.controller = HandshakeController(
            self.relay,
            negotiator_factory,
            ui_queue=self.ui_queue,
            channel=self.channel,
            display_name=display_name,
            heartbeat_interval=config_manager.get("heartbeat_interval"),
        )
        self._tasks = []

    def _on_relay_event(self, event, data):
        self.controller.post_relay_event(event, data)

    async def start(self):
        self._tasks = [
            asyncio.create_task(self.relay.run(), name="RelayConnection"),
            asyncio.create_task(self.controller.run(), name="CallController"),
        ]
        logger.debug("Peer session started.")

    async def stop(self):
        active_tasks = [t for t in self._tasks if not t.done()]
        for task in active_tasks:
            task.cancel()
        if active_tasks:
            results = await asyncio.gather(*active_tasks, return_exceptions=True)
            for task, result in zip(active_tasks, results):
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.error(f"Error during shutdown of task {task.get_name()}: {result}")
        self._tasks = []
        await self.controller.shutdown()
        await self.relay.close()
        logger.debug("Peer session stopped.")
