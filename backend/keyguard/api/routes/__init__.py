"""Router modules mounted by ``keyguard.api.main``."""
