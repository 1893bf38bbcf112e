"""
CI Persistence module.

This module contains the database implementation for build storage and the
collaborators backed by it: the Fernet secret vault and the event-log
notifier. Currently supports SQLite, but can be extended to PostgreSQL,
MySQL, etc.

The persistence layer depends on ci_common for domain models and interfaces,
and is used by ci_controller and ci_admin.
"""

from .event_log import EventLogNotifier
from .secret_vault import FernetSecretVault
from .sqlite_repository import SQLiteBuildRepository

__all__ = ["EventLogNotifier", "FernetSecretVault", "SQLiteBuildRepository"]
