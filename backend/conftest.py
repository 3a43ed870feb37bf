"""Root pytest configuration (kept intentionally minimal).

The application package resides in the nested `keyguard/` directory. Path
setup for tests lives in `tests/conftest.py`.
"""

# Intentionally no path mangling here.
