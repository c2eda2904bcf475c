"""
Control API client for a running relay.

Transport-only: each method sends one request and returns the decoded JSON
response, or None if the request failed.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class RelayControlClient:
    """
    Client for the relay's HTTP control API.

    Args:
        host: Relay control host
        port: Relay control port
        timeout: Per-request timeout in seconds
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 5000, timeout: float = 5.0):
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self.timeout = timeout

        # Suppress httpx INFO level logging
        logging.getLogger("httpx").setLevel(logging.WARNING)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            response = httpx.request(method, url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning(f"[RELAY] {method} {path} failed: {e}")
            return None
        except ValueError as e:
            logger.error(f"[RELAY] {method} {path} returned invalid JSON: {e}")
            return None

    def health(self) -> Optional[Dict[str, Any]]:
        return self._request("GET", "/health")

    def stats(self) -> Optional[Dict[str, Any]]:
        return self._request("GET", "/stats")

    def start(self) -> Optional[Dict[str, Any]]:
        return self._request("POST", "/start")

    def stop(self) -> Optional[Dict[str, Any]]:
        return self._request("POST", "/stop")

    def restart(self) -> Optional[Dict[str, Any]]:
        return self._request("POST", "/restart")

    def seek(self, segment_id: int) -> Optional[Dict[str, Any]]:
        """
        Move the serving position.

        Returns:
            Response dict, or None if the request failed (including an unavailable segment)
        """
        return self._request("POST", "/seek", {"segment_id": segment_id})

    def fallback_quality(self) -> Optional[Dict[str, Any]]:
        return self._request("POST", "/quality/fallback")

    def restore_quality(self) -> Optional[Dict[str, Any]]:
        return self._request("POST", "/quality/restore")
