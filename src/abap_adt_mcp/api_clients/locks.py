"""Lock handles and the per-client lock registry."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from .uris import lock_scope_uri, normalize_uri

# Informational only; the server decides when a lock really expires.
DEFAULT_LOCK_LIFETIME = timedelta(minutes=10)


@dataclass
class LockHandle:
    """Lock on one ADT object.

    Args:
        lock_handle: Opaque token returned by the LOCK action
        object_uri: Lock-scope URI the handle was issued for
        expires_at: Estimated expiry
        transport_number: Transport request the object is recorded on (CORRNR)
        transport_owner: Owner of that transport request (CORRUSER)
        transport_text: Description of that transport request (CORRTEXT)
    """

    lock_handle: str
    object_uri: str
    expires_at: Optional[datetime] = None
    transport_number: Optional[str] = None
    transport_owner: Optional[str] = None
    transport_text: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "handle": self.lock_handle,
            "uri": self.object_uri,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expired": self.is_expired(),
            "transport_number": self.transport_number,
            "transport_owner": self.transport_owner,
            "transport_text": self.transport_text,
        }


class LockRegistry:
    """Active locks keyed by lock-scope URI.

    Entries stay until unlocked; an elapsed ``expires_at`` estimate does not
    remove them, since only the server knows whether the lock is still held.

    A handle may be registered under extra aliases (the URI form the caller
    used); every lookup goes through ``lock_scope_uri`` first so
    ``.../ztest`` and ``.../ztest/source/main`` resolve to the same entry.
    """

    def __init__(self):
        self._locks: Dict[str, LockHandle] = {}

    @staticmethod
    def _keys(uri: str) -> List[str]:
        keys = [lock_scope_uri(uri)]
        normalized = normalize_uri(uri)
        if normalized not in keys:
            keys.append(normalized)
        return keys

    def register(self, handle: LockHandle, *aliases: str) -> None:
        for uri in (handle.object_uri, *aliases):
            for key in self._keys(uri):
                self._locks[key] = handle

    def get(self, uri: str) -> Optional[LockHandle]:
        for key in self._keys(uri):
            handle = self._locks.get(key)
            if handle is not None:
                return handle
        return None

    def remove(self, uri: str) -> Optional[LockHandle]:
        """Remove the entry for ``uri`` and every alias of the same handle."""
        handle = None
        for key in self._keys(uri):
            handle = handle or self._locks.get(key)
            self._locks.pop(key, None)
        if handle is not None:
            for key in [k for k, v in self._locks.items() if v is handle]:
                del self._locks[key]
        return handle

    def handles(self) -> List[LockHandle]:
        """Distinct registered handles."""
        seen: Dict[int, LockHandle] = {}
        for handle in self._locks.values():
            seen.setdefault(id(handle), handle)
        return list(seen.values())

    def drain(self) -> List[LockHandle]:
        handles = self.handles()
        self._locks.clear()
        return handles

    def clear(self) -> None:
        self._locks.clear()

    def __len__(self) -> int:
        return len(self.handles())

    def __contains__(self, uri: object) -> bool:
        if not isinstance(uri, str) or not uri:
            return False
        return any(key in self._locks for key in self._keys(uri))
