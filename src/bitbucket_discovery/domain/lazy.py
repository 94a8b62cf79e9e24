"""Deferred computations: memoized async thunks and lazily created sequences."""
import asyncio
from typing import AsyncIterator, Awaitable, Callable, Generic, Iterable, Optional, TypeVar


T = TypeVar("T")


class Lazy(Generic[T]):
    """An async thunk evaluated at most once.

    A failed evaluation is not memoized; the next ``get()`` tries again.
    """

    def __init__(self, loader: Callable[[], Awaitable[T]]):
        self._loader = loader
        self._lock: Optional[asyncio.Lock] = None
        self._evaluated = False
        self._value: Optional[T] = None

    @classmethod
    def of(cls, value: T) -> "Lazy[T]":
        """Returns an already evaluated thunk."""
        async def _constant() -> T:
            return value
        lazy = cls(_constant)
        lazy._evaluated = True
        lazy._value = value
        return lazy

    @property
    def evaluated(self) -> bool:
        return self._evaluated

    async def get(self) -> T:
        if self._evaluated:
            return self._value  # type: ignore[return-value]
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if not self._evaluated:
                self._value = await self._loader()
                self._evaluated = True
        return self._value  # type: ignore[return-value]


class LazySequence(Generic[T]):
    """An async iterable whose backing sequence is created on first iteration.

    Iterating more than once reuses the sequence created the first time.
    """

    def __init__(self, factory: Callable[[], Awaitable[Iterable[T]]]):
        self._source: Lazy[Iterable[T]] = Lazy(factory)

    @property
    def created(self) -> bool:
        return self._source.evaluated

    async def __aiter__(self) -> AsyncIterator[T]:
        items = await self._source.get()
        for item in items:
            yield item
