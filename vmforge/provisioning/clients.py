"""Process-scoped cache for expensive, authenticated backend clients."""

import logging
import threading

logger = logging.getLogger(__name__)


class ClientCache:
    """Lazily built, mutex-guarded singleton store.

    ``get(key, factory)`` calls *factory* at most once per key for the life
    of the process (or until ``reset()``). Concurrent first-time callers are
    serialized under the lock; once a key is populated it is read without
    locking.
    """

    def __init__(self, name):
        self.name = name
        self._clients = {}
        self._lock = threading.Lock()

    def get(self, key, factory):
        client = self._clients.get(key)
        if client is not None:
            return client
        with self._lock:
            client = self._clients.get(key)
            if client is None:
                logger.debug(f"Initializing {self.name} client")
                client = factory()
                self._clients[key] = client
        return client

    def __contains__(self, key):
        return key in self._clients

    def __len__(self):
        return len(self._clients)

    def reset(self):
        """Drop all cached clients, closing those that support it."""
        with self._lock:
            clients, self._clients = self._clients, {}
        for client in clients.values():
            close = getattr(client, "close", None)
            if callable(close):
                close()
