# peerlink/client/channel.py
import asyncio
import json
import logging
import mimetypes
import os
import aiofiles

from .file_transfer import FileTransfer, IncomingFile, TransferState

logger = logging.getLogger(__name__)

KEEPALIVE_MARKER = "__heartbeat__"
FILE_END_MARKER = "__file_end__"
DEFAULT_CHUNK_SIZE = 16 * 1024

# Frame kinds produced by classify_frame
KEEPALIVE = "keepalive"
CHAT = "chat"
META = "meta"
FILE_END = "file_end"
CHUNK = "chunk"

_MARKER_LENGTHS = {len(KEEPALIVE_MARKER.encode()), len(FILE_END_MARKER.encode())}


def classify_frame(frame):
    """
    Sniff an inbound data channel frame.
    Returns (kind, value): the chat text, the meta mapping, or the chunk bytes.
    Frames carry no type tag, so anything that is not a marker, a chat object
    or a meta object is file content.
    """
    if isinstance(frame, (bytearray, memoryview)):
        frame = bytes(frame)
    if isinstance(frame, str):
        text = frame
    elif isinstance(frame, bytes):
        text = None
        # Only frames that could be a marker or a JSON object are decoded
        if len(frame) in _MARKER_LENGTHS or frame[:1] == b"{":
            try:
                text = frame.decode("utf-8")
            except UnicodeDecodeError:
                text = None
    else:
        raise TypeError(f"unsupported frame type {type(frame).__name__}")

    if text is not None:
        if text == KEEPALIVE_MARKER:
            return KEEPALIVE, None
        if text == FILE_END_MARKER:
            return FILE_END, None
        if text.startswith("{"):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                if isinstance(parsed.get("text"), str):
                    return CHAT, parsed["text"]
                if isinstance(parsed.get("meta"), dict):
                    return META, parsed["meta"]

    if isinstance(frame, str):
        frame = frame.encode("utf-8")
    return CHUNK, frame


class ChannelMultiplexer:
    def __init__(self, ui_queue=None, chunk_size=DEFAULT_CHUNK_SIZE):
        """
        Frames chat and file traffic over one ordered peer transport.
        Args:
            ui_queue: asyncio.Queue receiving chat / progress / file events.
            chunk_size: Bytes per outgoing file chunk.
        """
        self.ui_queue = ui_queue
        self.chunk_size = chunk_size
        self.transport = None
        self.chat_log = [] # [{"sender": "me" | "peer", "text": ...}]
        self.received_files = []
        self.incoming = IncomingFile()
        self.outgoing = None # FileTransfer currently being sent

    def _notify(self, event):
        if self.ui_queue is not None:
            self.ui_queue.put_nowait(event)

    # --- Transport binding ---

    def attach(self, transport):
        self.transport = transport
        logger.debug("Channel attached to transport.")

    def detach(self, reason="Transport closed"):
        """Abandon in-flight transfers and forget the transport."""
        if self.outgoing is not None and self.outgoing.state == TransferState.IN_PROGRESS:
            self.outgoing.fail(reason)
        if self.incoming.chunks:
            logger.info(f"Discarding partial incoming file ({self.incoming.received_size} bytes): {reason}")
        self.incoming.reset()
        self.transport = None

    def reset(self, reason="Channel reset"):
        """Abandon in-flight transfers and clear chat history, keeping the transport."""
        if self.outgoing is not None and self.outgoing.state == TransferState.IN_PROGRESS:
            self.outgoing.fail(reason)
        self.outgoing = None
        self.incoming.reset()
        self.chat_log = []

    def _transport_ready(self):
        return self.transport is not None and not self.transport.destroyed

    # --- Outbound ---

    def send_chat(self, text):
        if not text:
            logger.warning("Attempted to send empty chat message.")
            return False
        if not self._transport_ready():
            logger.warning("Cannot send chat message: no open peer connection.")
            return False
        self.transport.send(json.dumps({"text": text}))
        entry = {"sender": "me", "text": text}
        self.chat_log.append(entry)
        self._notify({"type": "chat", **entry})
        return True

    async def send_file(self, file_path, media_type=None):
        """Send a file from disk. Returns True once the terminal marker is out."""
        if not os.path.isfile(file_path):
            logger.error(f"Send Error: File not found '{file_path}'")
            return False
        name = os.path.basename(file_path)
        if media_type is None:
            media_type = mimetypes.guess_type(name)[0]
        transfer = FileTransfer(name, media_type, direction="send", total_size=os.path.getsize(file_path))
        return await self._send_transfer(transfer, self._read_file(file_path))

    async def send_bytes(self, data, name, media_type=None):
        transfer = FileTransfer(name, media_type, direction="send", total_size=len(data))
        return await self._send_transfer(transfer, self._read_bytes(data))

    async def _read_file(self, file_path):
        async with aiofiles.open(file_path, "rb") as f:
            while True:
                chunk = await f.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    async def _read_bytes(self, data):
        view = memoryview(data)
        for offset in range(0, len(view), self.chunk_size):
            yield bytes(view[offset:offset + self.chunk_size])

    async def _send_transfer(self, transfer, chunks):
        if self.outgoing is not None and self.outgoing.state == TransferState.IN_PROGRESS:
            logger.error(f"Send Error: Already sending '{self.outgoing.name}'. Wait for it to finish.")
            return False
        if not self._transport_ready():
            logger.error("Send Error: no open peer connection.")
            return False

        self.outgoing = transfer
        logger.info(f"Starting send '{transfer.name}' ({transfer.total_size} bytes, ID: {transfer.transfer_id[:8]})")
        try:
            self.transport.send(json.dumps({"meta": {"name": transfer.name, "type": transfer.media_type}}))
            async for chunk in chunks:
                if transfer.state != TransferState.IN_PROGRESS or not self._transport_ready():
                    transfer.fail("Peer connection closed during send")
                    break
                self.transport.send(chunk)
                progress = transfer.advance(len(chunk))
                self._notify({"type": "transfer_progress", "direction": "send", "progress": int(progress * 100)})
                # Let heartbeats and inbound frames through between chunks
                await asyncio.sleep(0)
            else:
                if not self._transport_ready():
                    transfer.fail("Peer connection closed before end of file")
                    return False
                self.transport.send(FILE_END_MARKER)
                if transfer.total_size == 0:
                    self._notify({"type": "transfer_progress", "direction": "send", "progress": 100})
                transfer.complete()
        except Exception as e:
            logger.exception(f"Error sending '{transfer.name}': {e}")
            transfer.fail(f"Send error: {e}")
        finally:
            await chunks.aclose()
        return transfer.state == TransferState.COMPLETED

    # --- Inbound ---

    def receive(self, frame):
        """Apply one inbound frame. Returns the frame kind."""
        kind, value = classify_frame(frame)
        if kind == KEEPALIVE:
            pass
        elif kind == CHAT:
            entry = {"sender": "peer", "text": value}
            self.chat_log.append(entry)
            self._notify({"type": "chat", **entry})
        elif kind == META:
            name = value.get("name")
            media_type = value.get("type")
            self.incoming.set_meta(
                name if isinstance(name, str) else None,
                media_type if isinstance(media_type, str) else None,
            )
            logger.info(f"Incoming file '{self.incoming.name}'")
        elif kind == FILE_END:
            received = self.incoming.assemble()
            self.received_files.append(received)
            logger.info(f"Received '{received.name}' ({received.size} bytes)")
            self._notify({"type": "transfer_progress", "direction": "receive", "progress": 100})
            self._notify({
                "type": "file_received", "name": received.name,
                "media_type": received.media_type, "size": received.size, "data": received.data,
            })
        else:
            self.incoming.add_chunk(value)
        return kind
