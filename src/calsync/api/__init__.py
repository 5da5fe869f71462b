"""FastAPI backend: OAuth redirect result channel and Google API proxies."""

from calsync.api.app import create_app

__all__ = ["create_app"]
