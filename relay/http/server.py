"""
HTTP control surface for the relay.

Routes:
    GET  /                  service summary and route list
    GET  /health            status snapshot
    GET  /stats             detailed component statistics
    POST /start             start relaying
    POST /stop              stop relaying
    POST /restart           stop, then start after the restart delay
    POST /seek              {"segment_id": n}
    POST /quality/fallback  switch to the backup endpoint
    POST /quality/restore   switch back to the primary endpoint

All responses are JSON. Component failures become 500 responses; they never
take the server down.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional

logger = logging.getLogger(__name__)

ROUTES = {
    "health": "/health",
    "stats": "/stats",
    "start": "/start (POST)",
    "stop": "/stop (POST)",
    "restart": "/restart (POST)",
    "seek": "/seek (POST)",
    "fallback": "/quality/fallback (POST)",
    "restore": "/quality/restore (POST)",
}


def make_control_handler(service: Any):
    """Create a ControlHandler class bound to a RelayService."""

    class ControlHandler(BaseHTTPRequestHandler):
        """HTTP request handler for relay control endpoints."""

        def __init__(self, *args, **kwargs):
            self.service = service
            super().__init__(*args, **kwargs)

        def do_GET(self):
            path = self.path.split("?", 1)[0]
            if path == "/":
                self._guarded(self._handle_index)
            elif path == "/health":
                self._guarded(lambda: self._send_json(200, self.service.health()))
            elif path == "/stats":
                self._guarded(lambda: self._send_json(200, self.service.stats()))
            else:
                self._send_error_response(404, "Not Found")

        def do_POST(self):
            path = self.path.split("?", 1)[0]
            if path == "/start":
                self._guarded(self._handle_start)
            elif path == "/stop":
                self._guarded(self._handle_stop)
            elif path == "/restart":
                self._guarded(self._handle_restart)
            elif path == "/seek":
                self._guarded(self._handle_seek)
            elif path == "/quality/fallback":
                self._guarded(self._handle_fallback)
            elif path == "/quality/restore":
                self._guarded(self._handle_restore)
            else:
                self._send_error_response(404, "Not Found")

        def _guarded(self, handler):
            try:
                handler()
            except Exception as e:
                logger.error(f"Error handling {self.command} {self.path}: {e}", exc_info=True)
                self._send_error_response(500, "Internal server error")

        def _handle_index(self):
            self._send_json(200, {
                "service": "RTMP relay",
                "status": self.service.status.value,
                "mode": self.service.mode,
                "endpoints": ROUTES,
            })

        def _handle_start(self):
            started = self.service.start()
            message = "Stream start requested" if started else "Stream not started"
            self._send_json(200, {
                "message": message,
                "started": started,
                "status": self.service.status.value,
                "last_error": self.service.last_error,
            })

        def _handle_stop(self):
            self.service.stop()
            self._send_json(200, {"message": "Stream stopped", "status": self.service.status.value})

        def _handle_restart(self):
            self.service.restart()
            self._send_json(200, {"message": "Stream restart requested", "status": self.service.status.value})

        def _handle_seek(self):
            data = self._read_json()
            if data is None:
                return
            segment_id = data.get("segment_id")
            if not isinstance(segment_id, int) or isinstance(segment_id, bool):
                self._send_error_response(400, "'segment_id' must be an integer")
                return
            if not self.service.seek_to(segment_id):
                self._send_error_response(404, f"Segment {segment_id} is not available")
                return
            self._send_json(200, {"status": "ok", "segment_id": segment_id})

        def _handle_fallback(self):
            if not self.service.fallback_quality():
                self._send_error_response(400, "Quality fallback not available")
                return
            self._send_json(200, {"status": "ok", "message": "Quality fallback triggered"})

        def _handle_restore(self):
            if not self.service.restore_quality():
                self._send_error_response(400, "Quality restore not available")
                return
            self._send_json(200, {"status": "ok", "message": "Quality restore triggered"})

        def _read_json(self) -> Optional[dict]:
            content_length = int(self.headers.get("Content-Length", 0) or 0)
            if content_length == 0:
                self._send_error_response(400, "Request body is required")
                return None
            body = self.rfile.read(content_length)
            try:
                data = json.loads(body.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                self._send_error_response(400, f"Invalid JSON: {e}")
                return None
            if not isinstance(data, dict):
                self._send_error_response(400, "Request body must be a JSON object")
                return None
            return data

        def _send_json(self, status_code: int, payload: dict):
            body = json.dumps(payload).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _send_error_response(self, status_code: int, error_message: str):
            """Send error response in JSON format."""
            self._send_json(status_code, {"status": "error", "error": error_message})

        def log_message(self, format, *args):
            """Override to use our logger."""
            logger.debug(f"{self.address_string()} - {format % args}")

    return ControlHandler


class ControlServer:
    """HTTP control server running in a background thread."""

    def __init__(self, service: Any, host: str = "0.0.0.0", port: int = 5000):
        self.service = service
        self.host = host
        self.port = port
        self.server: Optional[ThreadingHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._shutdown = False

    def start(self) -> None:
        """Start the server in a background thread. Port 0 binds an ephemeral port."""
        if self.server is not None:
            raise RuntimeError("Server already started")

        handler_class = make_control_handler(self.service)
        self.server = ThreadingHTTPServer((self.host, self.port), handler_class)
        self.server.daemon_threads = True
        self.port = self.server.server_address[1]

        self.server_thread = threading.Thread(target=self._run_server, daemon=True, name="ControlServer")
        self.server_thread.start()
        logger.info(f"Control server listening on {self.host}:{self.port}")

    def _run_server(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            if not self._shutdown:
                logger.error(f"Control server error: {e}")

    def stop(self) -> None:
        if self.server is None:
            return
        self._shutdown = True
        self.server.shutdown()
        self.server.server_close()
        if self.server_thread:
            self.server_thread.join(timeout=2.0)
        self.server = None
        self.server_thread = None
