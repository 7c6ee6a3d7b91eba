from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .errors import AdmissionClosed

logger = logging.getLogger(__name__)


class AdmissionGate:
    """
    Fixed-size admission gate shared by every provider call in the process.

    Created once at startup and closed at shutdown by the application
    lifespan; each worker process owns its own gate.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("AdmissionGate capacity must be positive")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._in_flight = 0
        self._waiting = 0
        self._admitted = 0
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        if self._closed:
            raise AdmissionClosed("admission gate is closed")
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        if self._closed:
            self._semaphore.release()
            raise AdmissionClosed("admission gate is closed")
        self._in_flight += 1
        self._admitted += 1
        try:
            yield
        finally:
            self._in_flight -= 1
            self._semaphore.release()

    def close(self) -> None:
        if not self._closed:
            logger.info("Admission gate closed (%d call(s) still in flight)", self._in_flight)
        self._closed = True

    def stats(self) -> dict[str, int | bool]:
        return {
            "capacity": self._capacity,
            "in_flight": self._in_flight,
            "waiting": self._waiting,
            "admitted": self._admitted,
            "closed": self._closed,
        }
