from collections.abc import Callable, MutableMapping
from datetime import UTC, datetime, timedelta
from typing import Any

NowFn = Callable[[], datetime]


class TTLCache:
    """
    In-memory key/value cache whose entries expire `ttl` seconds after they
    were written. Expiry is checked lazily against `now_fn`.
    """

    def __init__(self, now_fn: NowFn | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(UTC))
        self._store: MutableMapping[str, tuple[Any, datetime]] = {}

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._now_fn() >= expires_at:
            self._store.pop(key, None)
            return None
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._store[key] = (value, self._now_fn() + timedelta(seconds=ttl))

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
