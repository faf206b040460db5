import sqlite3

__all__ = ("CacheError", "StorageUnavailable", "MalformedRequest", "BACKEND_ERRORS")


class CacheError(Exception): ...


class StorageUnavailable(CacheError):
    """The persistent backend refused an operation (quota, lock, closed connection, ...)."""


class MalformedRequest(CacheError, ValueError):
    """The request URL cannot be turned into a cache key."""


# Errors raised by the storage backends themselves, translated into StorageUnavailable.
BACKEND_ERRORS = (sqlite3.Error, OSError)
