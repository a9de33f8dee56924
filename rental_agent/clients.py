"""Process-wide MongoDB and OpenAI clients, created on first use."""

import logging
from typing import Optional

import motor.motor_asyncio
from openai import AsyncOpenAI

from .config import DATABASE_NAME, MONGODB_URI

logger = logging.getLogger(__name__)

_mongo_client: Optional[motor.motor_asyncio.AsyncIOMotorClient] = None
_openai_client: Optional[AsyncOpenAI] = None


def get_mongo_client() -> motor.motor_asyncio.AsyncIOMotorClient:
    global _mongo_client
    if _mongo_client is None:
        _mongo_client = motor.motor_asyncio.AsyncIOMotorClient(MONGODB_URI)
        logger.info("MongoDB async client created")
    return _mongo_client


def get_database(name: str = DATABASE_NAME) -> motor.motor_asyncio.AsyncIOMotorDatabase:
    return get_mongo_client()[name]


def get_openai_client() -> AsyncOpenAI:
    # Reads OPENAI_API_KEY from the environment.
    global _openai_client
    if _openai_client is None:
        _openai_client = AsyncOpenAI()
    return _openai_client


def close_clients() -> None:
    global _mongo_client
    if _mongo_client is not None:
        _mongo_client.close()
        _mongo_client = None
        logger.info("MongoDB connection closed")
