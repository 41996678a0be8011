from motor.motor_asyncio import AsyncIOMotorClient

from config.env import MONGODB_URI

_client = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        if not MONGODB_URI:
            raise RuntimeError("MONGODB_URI not set")
        _client = AsyncIOMotorClient(MONGODB_URI)
    return _client


def get_db():
    return get_client().get_default_database()
