"""
Error kinds raised while provisioning and tearing down ephemeral databases.
"""

from typing import Optional


class EphemeralDatabaseError(Exception):
    """Base class for every error raised by ephemeral_sql."""

    def __init__(self, message: str, database_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.database_name = database_name


class MalformedConnectionStringError(EphemeralDatabaseError, ValueError):
    """The connection string has no '/' separating server endpoint and database name."""


class DatabaseConnectionError(EphemeralDatabaseError, ConnectionError):
    """A connection to the server or to the ephemeral database could not be opened."""


class ProvisioningError(EphemeralDatabaseError):
    """The server rejected the CREATE DATABASE statement."""


class SetupError(EphemeralDatabaseError):
    """The caller supplied setup function failed."""


class PoolError(EphemeralDatabaseError):
    """The connection pool for the new database could not be opened."""


class TeardownError(EphemeralDatabaseError):
    """Terminating sessions or dropping the database failed.

    Never raised out of disposal; it is logged and kept on the instance.
    """
