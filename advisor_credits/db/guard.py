"""Bounded store calls: timeouts and driver errors become PersistenceError."""

import asyncio
from typing import Awaitable, TypeVar

from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from advisor_credits.core.config import get_settings
from advisor_credits.core.exceptions import NotFoundError, PersistenceError

T = TypeVar("T")


def _outcome_unknown(e: PyMongoError) -> bool:
    """The request may have reached the server, so a write may or may not have applied."""
    if isinstance(e, ServerSelectionTimeoutError):
        return False
    return isinstance(e, (AutoReconnect, ExecutionTimeout, WTimeoutError))


async def bounded(awaitable: Awaitable[T], operation: str, timeout: float | None = None) -> T:
    """
    Await a store call with a deadline.
    DuplicateKeyError passes through untouched: callers treat it as "someone got there first".
    A timed-out read is an unknown value, never zero or a cached value.
    """
    seconds = timeout if timeout is not None else get_settings().store_timeout_seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except DuplicateKeyError:
        raise
    except asyncio.TimeoutError as e:
        raise PersistenceError(
            f"{operation} timed out",
            details={"operation": operation, "outcome_unknown": True},
        ) from e
    except PyMongoError as e:
        raise PersistenceError(
            f"{operation} failed",
            details={"operation": operation, "outcome_unknown": _outcome_unknown(e)},
        ) from e


def object_id(value: str, label: str = "Resource") -> PydanticObjectId:
    """Parse a path/body id; malformed ids are simply not found."""
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError) as e:
        raise NotFoundError(f"{label} not found") from e
