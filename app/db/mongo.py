from motor.motor_asyncio import AsyncIOMotorClient
from app.core.config import settings
import logging

logger = logging.getLogger(__name__)


class MongoDB:
    client: AsyncIOMotorClient = None
    db = None

    async def connect_to_database(self, uri: str = None, db_name: str = None):
        logger.info("Connecting to MongoDB...")
        try:
            self.client = AsyncIOMotorClient(
                uri or settings.MONGO_URI,
                serverSelectionTimeoutMS=5000,
                tz_aware=True
            )
            self.db = self.client[db_name or settings.MONGO_DB_NAME]
            await self.client.admin.command("ping")
            logger.info(f"Connected to MongoDB database '{self.db.name}'.")
        except Exception as e:
            logger.error(f"Could not connect to MongoDB: {e}")
            raise

    async def close_database_connection(self):
        logger.info("Closing MongoDB connection...")
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed.")


mongodb = MongoDB()


async def get_database():
    if mongodb.db is None:
        raise RuntimeError("MongoDB is not connected")
    return mongodb.db
