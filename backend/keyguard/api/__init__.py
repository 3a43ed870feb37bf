"""API package.

This exposes router modules to simplify test imports like:
    from keyguard.api.routes.admin_keys import router
"""

__all__ = [
    "routes",
]
