"""MongoConnectionManager — Motor client lifecycle, default database, health check."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .exceptions import MongoConnectionError, ReadJournalConfigurationError

if TYPE_CHECKING:
    from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

    from .config import MongoDbConfig


class MongoConnectionManager:
    """Wrap the Motor client shared by all read journal streams.

    The client's connection pool is the only resource shared between
    concurrently running streams.
    """

    def __init__(
        self,
        url: str = "mongodb://localhost:27017",
        *,
        database: str | None = None,
        server_selection_timeout_ms: int = 5000,
        connect_timeout_ms: int = 10000,
        **kwargs: Any,
    ) -> None:
        self._url = url
        self._database = database
        self._server_selection_timeout_ms = server_selection_timeout_ms
        self._connect_timeout_ms = connect_timeout_ms
        self._kwargs = kwargs
        self._client: AsyncIOMotorClient[Any] | None = None

    @classmethod
    def from_config(cls, config: MongoDbConfig) -> MongoConnectionManager:
        kwargs: dict[str, Any] = {}
        if config.max_pool_size is not None:
            kwargs["maxPoolSize"] = config.max_pool_size
        return cls(
            config.uri,
            database=config.database,
            server_selection_timeout_ms=config.server_selection_timeout_ms,
            connect_timeout_ms=config.connect_timeout_ms,
            **kwargs,
        )

    async def connect(self) -> AsyncIOMotorClient[Any]:
        """Create and cache the Motor client. Idempotent."""
        if self._client is not None:
            return self._client
        try:
            from motor.motor_asyncio import AsyncIOMotorClient
        except ImportError as e:
            raise MongoConnectionError(
                "motor is required; install with motor>=3.3.0"
            ) from e
        try:
            self._client = AsyncIOMotorClient(
                self._url,
                serverSelectionTimeoutMS=self._server_selection_timeout_ms,
                connectTimeoutMS=self._connect_timeout_ms,
                **self._kwargs,
            )
            return self._client
        except Exception as e:
            raise MongoConnectionError(str(e)) from e

    @property
    def client(self) -> AsyncIOMotorClient[Any]:
        """Return the Motor client; raises if not connected."""
        if self._client is None:
            raise MongoConnectionError("Not connected; call connect() first")
        return self._client

    @property
    def database_name(self) -> str | None:
        return self._database

    def get_database(self, name: str | None = None) -> AsyncIOMotorDatabase[Any]:
        """Return *name*, the configured database, or the URI's default database.

        Mongomock requires a positional argument, Motor accepts positional or
        keyword. This works with both.
        """
        client = self.client
        database_name = name or self._database
        if database_name:
            return client.get_database(database_name)
        try:
            return client.get_database()
        except Exception as e:
            raise MongoConnectionError(
                "Database name must be set when the connection URI has no "
                "default database"
            ) from e

    def close(self) -> None:
        """Close the client (synchronous; Motor client.close() is sync)."""
        if self._client is not None:
            self._client.close()
            self._client = None

    async def health_check(self) -> bool:
        """Ping the server; return True if reachable."""
        if self._client is None:
            return False
        try:
            await self._client.admin.command("ping")
            return True
        except Exception:  # noqa: BLE001
            return False


def resolve_database(
    connection: MongoConnectionManager, name: str | None = None
) -> AsyncIOMotorDatabase[Any]:
    """Return the database the query objects work on.

    Called by their constructors, so an unconnected manager or a missing
    database name raises ReadJournalConfigurationError before any stream runs.
    """
    try:
        return connection.get_database(name)
    except MongoConnectionError as e:
        raise ReadJournalConfigurationError(str(e)) from e
