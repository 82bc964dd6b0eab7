"""
asyncio facade over the threaded client engine.
"""
from .client import AsyncMQTTClient

__all__ = [
    "AsyncMQTTClient",
]
