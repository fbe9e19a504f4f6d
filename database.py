import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession
from pymongo.errors import OperationFailure

import config
from schemas import REGISTRY, Collection

logger = logging.getLogger(__name__)


class Database:
    """MongoDB handle shared by every request.

    Opened once in the application lifespan, injected into the services
    and closed at shutdown.
    """

    def __init__(
        self,
        url: str = config.MONGODB_URL,
        name: str = config.MONGODB_DB,
        transactions: bool = config.MONGODB_TRANSACTIONS,
        client: Optional[AsyncIOMotorClient] = None,
    ):
        self.url = url
        self.name = name
        self.transactions = transactions
        self.client = client

    @property
    def db(self):
        if self.client is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self.client[self.name]

    async def connect(self) -> None:
        if self.client is None:
            self.client = AsyncIOMotorClient(self.url)
        await self.client.admin.command("ping")
        logger.info("Connected to MongoDB database '%s'", self.name)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("MongoDB connection closed")

    def collection(self, name):
        if isinstance(name, Collection):
            name = name.value
        return self.db[name]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Optional[AsyncIOMotorClientSession]]:
        """Yield a session inside a transaction, or None when transactions are off."""
        if not self.transactions:
            logger.warning("Transactions disabled; bulk writes are not atomic")
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def ensure_indexes(self) -> None:
        for collection, spec in REGISTRY.items():
            for index in spec.indexes:
                keys = [(key, 1) for key in index.keys]
                try:
                    await self.collection(collection).create_index(keys, unique=index.unique)
                except OperationFailure as exc:
                    logger.warning("Could not create index %s on %s: %s", index.keys, collection.value, exc)
            logger.debug("Indexes ensured for %s", collection.value)


def live_filter(**conditions):
    """Predicate matching documents that were never soft-deleted."""
    return {"deleted_at": {"$exists": False}, **conditions}


def get_database(request: Request) -> Database:
    return request.app.state.db
