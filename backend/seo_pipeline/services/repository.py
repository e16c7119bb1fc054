from typing import Dict, Generic, List, Optional, Protocol, TypeVar

T = TypeVar("T")


class Repository(Protocol[T]):
    """Keyed store for pipeline artifacts (research results, outlines, workflows)."""

    def get(self, key: str) -> Optional[T]: ...

    def put(self, key: str, value: T) -> None: ...

    def delete(self, key: str) -> bool: ...


class InMemoryRepository(Generic[T]):
    """Process-lifetime store backed by a dict. Nothing is ever evicted."""

    def __init__(self):
        self._items: Dict[str, T] = {}

    def get(self, key: str) -> Optional[T]:
        return self._items.get(key)

    def put(self, key: str, value: T) -> None:
        self._items[key] = value

    def delete(self, key: str) -> bool:
        return self._items.pop(key, None) is not None

    def list(self) -> List[T]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)
