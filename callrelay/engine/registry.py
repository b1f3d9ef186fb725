"""
Registry of live engine connections.

Created at process startup, closed at shutdown, and passed by reference to the
components that need to reach a session's connection.
"""

from __future__ import annotations

import asyncio

from utils.ml_logging import get_logger

from callrelay.engine.connection import SessionConnection

logger = get_logger(__name__)


class ActiveSessionRegistry:
    def __init__(self) -> None:
        self._connections: dict[str, SessionConnection] = {}
        self._by_org: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection: SessionConnection) -> None:
        async with self._lock:
            existing = self._connections.get(connection.session_id)
            if existing is not None and existing is not connection:
                raise ValueError(f"Session {connection.session_id} already has a connection")
            self._connections[connection.session_id] = connection
            self._by_org.setdefault(connection.organization_id, set()).add(connection.session_id)
        logger.debug(
            "Registered engine connection (active=%d)",
            len(self._connections),
            extra={"session_id": connection.session_id},
        )

    async def remove(self, session_id: str) -> SessionConnection | None:
        async with self._lock:
            connection = self._connections.pop(session_id, None)
            if connection is not None:
                org_sessions = self._by_org.get(connection.organization_id)
                if org_sessions is not None:
                    org_sessions.discard(session_id)
                    if not org_sessions:
                        del self._by_org[connection.organization_id]
        return connection

    def get(self, session_id: str) -> SessionConnection | None:
        return self._connections.get(session_id)

    def by_organization(self, organization_id: str) -> list[SessionConnection]:
        return [
            self._connections[sid]
            for sid in sorted(self._by_org.get(organization_id, ()))
            if sid in self._connections
        ]

    def __len__(self) -> int:
        return len(self._connections)

    async def close_all(self, reason: str = "Server shutdown") -> None:
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._by_org.clear()
        results = await asyncio.gather(
            *(connection.close(reason) for connection in connections), return_exceptions=True
        )
        for connection, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Error closing engine connection: %s",
                    result,
                    extra={"session_id": connection.session_id},
                )
        logger.info("Closed %d engine connections", len(connections))
