import logging
from contextlib import contextmanager

from fastapi import HTTPException
from pymongo.errors import PyMongoError

from database import DatabaseNotAvailable

logger = logging.getLogger(__name__)


def failure_message(action: str, error: Exception) -> str:
    return f"Failed to {action}: {error}"


@contextmanager
def platform_call(action: str):
    """Turn a failed store call into a 503 carrying a single message for the client."""
    try:
        yield
    except (PyMongoError, DatabaseNotAvailable) as e:
        logger.error(failure_message(action, e))
        raise HTTPException(status_code=503, detail=failure_message(action, e))
