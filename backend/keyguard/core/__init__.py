"""Core infrastructure: configuration, database, logging and auth.

Exports configuration settings to simplify import paths inside tests
(e.g. `from keyguard.core import settings`).
"""

from .config import settings  # noqa: F401
