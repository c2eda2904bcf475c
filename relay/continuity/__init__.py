"""
Relay continuity subsystem.

- ContinuityController: stable position tracking, resume points, serving manifest
- render_playlist / write_playlist: HLS manifest output
"""

from relay.continuity.controller import ContinuityController, ContinuityState
from relay.continuity.playlist import render_playlist, write_playlist

__all__ = [
    "ContinuityController",
    "ContinuityState",
    "render_playlist",
    "write_playlist",
]
