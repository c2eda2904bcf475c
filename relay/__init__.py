"""
RTMP relay.

Relays a remote media source to one or more RTMP endpoints through
supervised ffmpeg processes: a capture process fills a rolling segment
cache, publisher processes stream the cached segments to each endpoint, and
a health monitor restarts whatever falls over from the last stable position.
"""

__version__ = "1.0.0"
