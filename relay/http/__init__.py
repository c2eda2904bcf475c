"""Relay HTTP control surface (server and client)."""

from relay.http.client import RelayControlClient
from relay.http.server import ControlServer, make_control_handler

__all__ = [
    "ControlServer",
    "RelayControlClient",
    "make_control_handler",
]
