"""
Relay publishing subsystem.

- Endpoint: one RTMP destination (stream key kept out of logs)
- PublisherPool: supervised publisher per active endpoint, quality fallback/restore
"""

from relay.publisher.endpoint import Endpoint
from relay.publisher.pool import PublisherPool

__all__ = [
    "Endpoint",
    "PublisherPool",
]
