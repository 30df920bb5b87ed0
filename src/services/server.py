"""
Remote Signer Server - Reference remote signer over mutual TLS.

Provides endpoints for:
- /health - Health check
- /accounts - Public keys this signer owns
- /sign - Sign a signing root for one of those keys

Every client must present a certificate signed by the configured CA.
"""

import json
import logging
import socket
import ssl
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from socketserver import ThreadingMixIn
from typing import Optional

from wallet.errors import ConfigError

from .signing import SigningService

logger = logging.getLogger(__name__)


# Map error codes to appropriate HTTP status codes
ERROR_CODE_TO_HTTP_STATUS = {
    # 400 Bad Request - client errors, malformed request
    "INVALID_REQUEST": 400,
    "INVALID_JSON": 400,

    # 404 Not Found - resource doesn't exist
    "UNKNOWN_ACCOUNT": 404,
    "NOT_FOUND": 404,

    # 405 Method Not Allowed
    "METHOD_NOT_ALLOWED": 405,

    # 409 Conflict - account lock held by another request
    "ACCOUNT_BUSY": 409,

    # 413 Payload Too Large
    "PAYLOAD_TOO_LARGE": 413,

    # 500 Internal Server Error - server-side issues
    "SIGNING_ERROR": 500,

    # 503 Service Unavailable - temporary, retryable
    "WALLET_LOCKED": 503,
}


def get_http_status_for_error(error_code: str) -> int:
    """Get the appropriate HTTP status code for an error code."""
    return ERROR_CODE_TO_HTTP_STATUS.get(error_code, 400)


# Maximum request body size (sign requests are a few hundred bytes)
MAX_CONTENT_LENGTH = 64 * 1024

# Seconds a client gets to finish the TLS handshake and send its request
CLIENT_TIMEOUT = 30


def build_server_context(cert_path: str, key_path: str, ca_cert_path: str) -> ssl.SSLContext:
    """TLS server context that requires a client certificate signed by the CA."""
    try:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(cert_path, key_path)
        context.load_verify_locations(cafile=ca_cert_path)
    except (OSError, ssl.SSLError) as e:
        raise ConfigError(f"Cannot load server TLS identity: {e}", operation="remote-signer") from e
    context.verify_mode = ssl.CERT_REQUIRED
    return context


class SignerRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for remote sign requests."""

    protocol_version = "HTTP/1.1"
    timeout = CLIENT_TIMEOUT

    GET_ENDPOINTS = frozenset(["/health", "/accounts"])
    POST_ENDPOINTS = frozenset(["/sign"])

    def log_message(self, format, *args):
        """Route access logs through logging at debug level."""
        logger.debug(f"{self.client_address[0]} - {format % args}")

    def _send_json_response(self, status: int, data: dict, headers: Optional[dict] = None):
        """Send a JSON response."""
        body = json.dumps(data).encode()
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def _send_error(self, code: str, error: str, headers: Optional[dict] = None):
        self._send_json_response(get_http_status_for_error(code),
                                 {"status": "error", "error": error, "code": code}, headers)

    def _send_result(self, result: dict):
        if result.get("status") == "error":
            headers = {"Retry-After": "5"} if result.get("code") == "WALLET_LOCKED" else None
            self._send_json_response(get_http_status_for_error(result.get("code")), result, headers)
        else:
            self._send_json_response(200, result)

    def _get_base_path(self) -> str:
        """Get the path without query string."""
        return self.path.split("?")[0]

    @property
    def signing_service(self) -> SigningService:
        return self.server.signing_service

    def do_GET(self):
        base_path = self._get_base_path()
        if base_path in self.POST_ENDPOINTS:
            self._send_error("METHOD_NOT_ALLOWED", "Method not allowed", {"Allow": "POST"})
        elif base_path == "/health":
            self._send_json_response(200, {"status": "ok"})
        elif base_path == "/accounts":
            self._send_result(self.signing_service.handle_accounts())
        else:
            self._send_error("NOT_FOUND", f"No such endpoint: {base_path}")

    def do_POST(self):
        base_path = self._get_base_path()
        if base_path in self.GET_ENDPOINTS:
            self._send_error("METHOD_NOT_ALLOWED", "Method not allowed", {"Allow": "GET"})
            return
        if base_path not in self.POST_ENDPOINTS:
            self._send_error("NOT_FOUND", f"No such endpoint: {base_path}")
            return

        try:
            content_length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            content_length = -1
        if content_length < 0 or content_length > MAX_CONTENT_LENGTH:
            self.close_connection = True
            self._send_error("PAYLOAD_TOO_LARGE", f"Payload too large (max {MAX_CONTENT_LENGTH} bytes)")
            return
        body = self.rfile.read(content_length) if content_length > 0 else b"{}"

        try:
            request_data = json.loads(body)
        except ValueError:
            self._send_error("INVALID_JSON", "Invalid JSON")
            return

        self._send_result(self.signing_service.handle_sign_request(request_data))


class ThreadedHTTPSServer(ThreadingMixIn, HTTPServer):
    """HTTPS server that handles each connection in a separate thread.

    The TLS handshake runs in the connection's thread, so a slow client
    cannot stall the accept loop.
    """
    daemon_threads = True  # Don't block shutdown waiting for threads

    def __init__(self, server_address, handler_class, ssl_context: ssl.SSLContext,
                 signing_service: SigningService):
        super().__init__(server_address, handler_class)
        self.signing_service = signing_service
        self._connections = set()
        self._connections_lock = threading.Lock()
        self.socket = ssl_context.wrap_socket(self.socket, server_side=True,
                                              do_handshake_on_connect=False)

    def finish_request(self, request, client_address):
        request.settimeout(CLIENT_TIMEOUT)
        try:
            request.do_handshake()
        except (ssl.SSLError, OSError) as e:
            logger.warning(f"TLS handshake with {client_address[0]} failed: {e}")
            return
        with self._connections_lock:
            self._connections.add(request)
        super().finish_request(request, client_address)

    def shutdown_request(self, request):
        with self._connections_lock:
            self._connections.discard(request)
        super().shutdown_request(request)

    def close_connections(self) -> None:
        """Cut keep-alive connections so handler threads exit."""
        with self._connections_lock:
            connections = list(self._connections)
        for request in connections:
            try:
                request.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Connection already closed: {e}")


class RemoteSignerServer:
    """Manages the HTTPS server for remote signing."""

    def __init__(self, signing_service: SigningService, ssl_context: ssl.SSLContext,
                 host: str = "127.0.0.1"):
        self._signing_service = signing_service
        self._ssl_context = ssl_context
        self._host = host
        self._server: Optional[ThreadedHTTPSServer] = None
        self._thread: Optional[threading.Thread] = None
        self._port = 0

    @property
    def port(self) -> int:
        return self._port

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    def _bind(self, port: int) -> None:
        self._server = ThreadedHTTPSServer((self._host, port), SignerRequestHandler,
                                           self._ssl_context, self._signing_service)
        self._port = self._server.server_address[1]

    def start(self, port: int = 0) -> int:
        """
        Start serving in a background thread.

        Args:
            port: Port to listen on (0 picks a free port)

        Returns:
            The bound port
        """
        if self._server is not None:
            return self._port
        self._bind(port)
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()
        logger.info(f"Remote signer listening on {self.address}")
        return self._port

    def serve_forever(self, port: int) -> None:
        """Serve in the calling thread until interrupted."""
        self._bind(port)
        logger.info(f"Remote signer listening on {self.address}")
        try:
            self._server.serve_forever()
        finally:
            self._server.server_close()
            self._server = None

    def stop(self):
        """Stop the HTTPS server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server.close_connections()
            self._server = None
            if self._thread:
                self._thread.join(timeout=5)
            self._thread = None
            logger.info("Remote signer stopped")
