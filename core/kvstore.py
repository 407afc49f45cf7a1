"""
Stockage clé/valeur avec TTL, injecté là où un état partagé est nécessaire
(factures du backend Lightning simulé). Deux implémentations:
- InMemoryStore: mono-instance / tests, balayage explicite des entrées expirées
- CacheStore: cache Django (Redis en dev/prod), partagé entre workers
"""
import threading
import time
from typing import Any, Dict, Optional, Tuple

from django.core.cache import cache


class KeyValueStore:
    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def sweep(self) -> int:
        """Purge les entrées expirées; retourne le nombre supprimé."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (exp, _) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class CacheStore(KeyValueStore):
    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def get(self, key: str) -> Optional[Any]:
        return cache.get(self._key(key))

    def set(self, key: str, value: Any, ttl: int) -> None:
        cache.set(self._key(key), value, timeout=ttl)

    def delete(self, key: str) -> None:
        cache.delete(self._key(key))
