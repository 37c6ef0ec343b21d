# peerlink/registry.py
import logging
import secrets
import string

logger = logging.getLogger(__name__)

DEFAULT_ID_LENGTH = 4
_BASE36 = string.digits + string.ascii_lowercase


class IdentityRegistry:
    def __init__(self, id_length=DEFAULT_ID_LENGTH):
        """
        Bidirectional peerId <-> connection handle mapping for live sessions.
        Args:
            id_length: Number of handle characters used for a fresh peerId.
        """
        if id_length < 1:
            raise ValueError("id_length must be at least 1")
        self.id_length = id_length
        self._handles_by_id = {} # {peer_id: connection_handle}
        self._ids_by_handle = {} # {connection_handle: peer_id}

    def __len__(self):
        return len(self._ids_by_handle)

    def allocate(self, connection_handle):
        """
        Assign a unique peerId to a newly connected handle and return it.
        The candidate starts as a prefix of the handle and grows one character
        per collision; once the handle is exhausted random base-36 characters
        are appended until the candidate is free.
        """
        if connection_handle in self._ids_by_handle:
            # Already registered, keep the existing id
            return self._ids_by_handle[connection_handle]

        length = min(self.id_length, len(connection_handle))
        candidate = connection_handle[:length]
        while not candidate or candidate in self._handles_by_id:
            if length < len(connection_handle):
                length += 1
                candidate = connection_handle[:length]
            else:
                candidate += secrets.choice(_BASE36)

        self._handles_by_id[candidate] = connection_handle
        self._ids_by_handle[connection_handle] = candidate
        logger.debug(f"Allocated peer id {candidate} for handle {connection_handle}")
        return candidate

    def release(self, connection_handle):
        """Drop both directions of the mapping. Unknown handles are ignored."""
        peer_id = self._ids_by_handle.pop(connection_handle, None)
        if peer_id is None:
            return None
        self._handles_by_id.pop(peer_id, None)
        logger.debug(f"Released peer id {peer_id}")
        return peer_id

    def resolve(self, raw_id):
        """
        Map a user-supplied id to a live connection handle.
        Registry ids win; a raw connection handle is accepted only when it
        belongs to a live session. Returns None when nothing matches.
        """
        if not isinstance(raw_id, str):
            return None
        target = raw_id.strip()
        if not target:
            return None
        handle = self._handles_by_id.get(target)
        if handle is not None:
            return handle
        if target in self._ids_by_handle:
            return target
        return None

    def peer_id_for(self, connection_handle):
        return self._ids_by_handle.get(connection_handle)

    def live_handles(self):
        return list(self._ids_by_handle)
