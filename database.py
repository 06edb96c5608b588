import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings

logger = logging.getLogger(__name__)


def connect(settings: Settings) -> Database:
    """Open the client and return the configured database.

    The server is pinged before returning, so an unreachable store fails
    here instead of on the first request. The client is reachable afterwards
    as ``db.client`` and must be handed to ``close`` on shutdown.
    """
    client = MongoClient(
        settings.database_url,
        serverSelectionTimeoutMS=settings.database_timeout_ms,
        tz_aware=True,
    )
    try:
        client.admin.command("ping")
    except PyMongoError:
        logger.error("Cannot reach MongoDB at %s", settings.database_url)
        client.close()
        raise
    db = client[settings.database_name]
    logger.info("Connected to MongoDB database %r", settings.database_name)
    return db


def close(client: Optional[MongoClient]) -> None:
    if client is None:
        return
    client.close()
    logger.info("Database connection closed")


def create_document(collection: Collection, data: Union[BaseModel, Mapping[str, Any]]) -> str:
    """Insert one document and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    result = collection.insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection: Collection,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    projection: Optional[Dict[str, Any]] = None,
) -> List[dict]:
    cursor = collection.find(filter_dict or {}, projection)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
