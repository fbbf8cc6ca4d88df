"""
Remote action endpoint.

``RemoteStoreClient`` talks to the endpoint; ``remote.server`` holds a
reference implementation of it for development and tests.
"""

from .client import RemoteStoreClient

__all__ = ["RemoteStoreClient"]
