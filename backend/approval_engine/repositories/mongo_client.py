"""MongoDB Client - Connection and Collection Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

WORKFLOW_TEMPLATES = "workflow_templates"
PHASE_TEMPLATES = "appraisal_phase_templates"
WORKFLOW_INSTANCES = "workflow_instances"
STEP_ACTIONS = "workflow_step_actions"
EVENT_OUTBOX = "workflow_event_outbox"

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the engine database"""
    global _database
    if _database is None:
        _database = get_client()[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    return get_database()[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(db: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = db if db is not None else get_database()
    logger.info("Creating MongoDB indexes...")

    templates = db[WORKFLOW_TEMPLATES]
    templates.create_index("template_id", unique=True)
    templates.create_index([("code", ASCENDING), ("created_at", ASCENDING)])
    templates.create_index([("is_active", ASCENDING), ("category", ASCENDING)])

    phase_templates = db[PHASE_TEMPLATES]
    phase_templates.create_index("template_id", unique=True)

    instances = db[WORKFLOW_INSTANCES]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("status", ASCENDING), ("initiated_at", ASCENDING), ("instance_id", ASCENDING)])
    instances.create_index([("reference_type", ASCENDING), ("reference_id", ASCENDING)])
    instances.create_index("updated_at", background=True)

    actions = db[STEP_ACTIONS]
    actions.create_index("action_id", unique=True)
    actions.create_index([("instance_id", ASCENDING), ("acted_at", ASCENDING)])

    outbox = db[EVENT_OUTBOX]
    outbox.create_index("event_id", unique=True)
    outbox.create_index([("dispatched_at", ASCENDING), ("occurred_at", ASCENDING)])
    outbox.create_index([("instance_id", ASCENDING), ("occurred_at", DESCENDING)])
    outbox.create_index("correlation_id")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        get_client().admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
