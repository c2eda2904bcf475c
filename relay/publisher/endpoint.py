"""RTMP publish destinations."""

from dataclasses import dataclass, field

from relay.urls import redact_url


@dataclass
class Endpoint:
    """
    One RTMP destination.

    url embeds the stream key and is kept out of repr(); use to_dict() for
    anything that leaves the process.
    """
    name: str
    url: str = field(repr=False)
    priority: int = 1
    active: bool = True

    @property
    def is_primary(self) -> bool:
        return self.priority <= 1

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": redact_url(self.url),
            "priority": self.priority,
            "active": self.active,
        }
