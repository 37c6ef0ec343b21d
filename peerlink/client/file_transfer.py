import logging
import uuid
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_TYPE = "application/octet-stream"
DEFAULT_FILE_NAME = "download"


class TransferState(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class FileTransfer:
    def __init__(self, name, media_type, direction="send", total_size=0, transfer_id=None):
        self.name = name
        self.media_type = media_type or DEFAULT_MEDIA_TYPE
        self.direction = direction
        self.transfer_id = transfer_id if transfer_id else str(uuid.uuid4())
        self.total_size = total_size
        self.transferred_size = 0
        self.state = TransferState.IN_PROGRESS

    @property
    def progress(self):
        """Fraction of bytes moved so far, 0.0 - 1.0."""
        if self.total_size <= 0:
            return 1.0 if self.state == TransferState.COMPLETED else 0.0
        return self.transferred_size / self.total_size

    def advance(self, nbytes):
        self.transferred_size += nbytes
        return self.progress

    def complete(self):
        if self.state == TransferState.IN_PROGRESS:
            self.state = TransferState.COMPLETED
            logger.info(f"Transfer {self.transfer_id[:8]} ({self.direction}) of '{self.name}' completed.")

    def fail(self, reason="Unknown"):
        if self.state == TransferState.IN_PROGRESS:
            self.state = TransferState.FAILED
            logger.error(f"Transfer {self.transfer_id[:8]} ({self.direction}) failed: {reason}")


class IncomingFile:
    """Receive-side accumulator: pending metadata plus ordered binary chunks."""

    def __init__(self):
        self.name = None
        self.media_type = None
        self.chunks = []
        self.received_size = 0

    def set_meta(self, name, media_type):
        self.name = name
        self.media_type = media_type

    def add_chunk(self, chunk):
        self.chunks.append(chunk)
        self.received_size += len(chunk)

    def assemble(self):
        """Join the chunks in arrival order and reset the accumulator."""
        received = ReceivedFile(
            name=self.name or DEFAULT_FILE_NAME,
            media_type=self.media_type or DEFAULT_MEDIA_TYPE,
            data=b"".join(self.chunks),
        )
        self.reset()
        return received

    def reset(self):
        self.name = None
        self.media_type = None
        self.chunks = []
        self.received_size = 0


class ReceivedFile:
    def __init__(self, name, media_type, data):
        self.name = name
        self.media_type = media_type
        self.data = data

    @property
    def size(self):
        return len(self.data)

    def __repr__(self):
        return f"ReceivedFile(name={self.name!r}, media_type={self.media_type!r}, size={self.size})"
