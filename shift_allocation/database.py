from collections.abc import Callable, Iterator, MutableMapping
from typing import Generic, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    In-memory key/value store backing the repository. Single event loop
    only: no method awaits, so each call is atomic with respect to other
    tasks.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def __iter__(self) -> Iterator[V]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._store)

    def put_if(self, key: K, value: V, predicate: Callable[[V | None], bool]) -> bool:
        """
        Compare-and-set: store `value` only if `predicate(current)` holds.
        Returns True if the write happened.
        """
        if not predicate(self._store.get(key)):
            return False
        self._store[key] = value
        return True
