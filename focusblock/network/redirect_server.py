#!/usr/bin/env python3
"""
Local page server for redirected domains.

The hosts file sends blocked domains to this machine; this server answers every
connection with the same small "focus time" page. It does not parse requests:
whatever arrives (including nothing, or binary garbage) gets a 200 response.
"""
import html
import random
import socket
import logging
import threading
import socketserver

from focusblock.utils.constants import (
    CONNECTION_TIMEOUT,
    MAX_REQUEST_BYTES,
    REDIRECT_HOST,
    REDIRECT_PORT,
)

DRAIN_TIMEOUT = 0.05  # seconds

FOCUS_QUOTES = (
    "You have power over your mind - not outside events. Realize this, and you will find strength. (Marcus Aurelius)",
    "Waste no more time arguing what a good person should be. Be one. (Marcus Aurelius)",
    "It's not what happens to you, but how you react to it that matters. (Epictetus)",
    "Don't explain your philosophy. Embody it. (Epictetus)",
    "The impediment to action advances action. What stands in the way becomes the way. (Marcus Aurelius)",
    "Confine yourself to the present. (Marcus Aurelius)",
    "Very little is needed to make a happy life; it is all within yourself, in your way of thinking. (Marcus Aurelius)",
)

PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>Focus Time</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<style>
body{{font-family:-apple-system,'Segoe UI',system-ui,sans-serif;background:#f8f9fa;color:#2c3e50;
min-height:100vh;margin:0;display:flex;align-items:center;justify-content:center;line-height:1.6}}
.container{{text-align:center;max-width:600px;padding:40px 20px}}
h1{{font-size:24px;font-weight:300;margin-bottom:30px;color:#34495e}}
.quote{{font-size:18px;font-style:italic;margin:40px 0;padding:30px;background:#fff;border-radius:8px;
box-shadow:0 2px 10px rgba(0,0,0,.1)}}
.subtitle{{font-size:14px;color:#7f8c8d}}
</style>
</head>
<body>
<div class="container">
<h1>focus time</h1>
<div class="quote">{quote}</div>
<div class="subtitle">return to your work when ready</div>
</div>
</body>
</html>
"""

RESPONSE_BODIES = tuple(PAGE_TEMPLATE.format(quote=html.escape(q)).encode("utf-8") for q in FOCUS_QUOTES)


def build_response(body: bytes) -> bytes:
    head = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Cache-Control: no-store\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + body


class FocusPageHandler(socketserver.BaseRequestHandler):
    """Reads whatever the client sends (bounded) and answers with the focus page"""

    def handle(self):
        self.drain_request()
        self.request.sendall(build_response(random.choice(RESPONSE_BODIES)))

    def drain_request(self) -> int:
        """Read and discard up to max_request_bytes; returns the byte count"""
        conn = self.request
        limit = self.server.max_request_bytes
        received = b""
        conn.settimeout(self.server.connection_timeout)
        try:
            while len(received) < limit and b"\r\n\r\n" not in received:
                chunk = conn.recv(limit - len(received))
                if not chunk:
                    break
                received += chunk
                # Only the first read waits the full timeout
                conn.settimeout(DRAIN_TIMEOUT)
        except (socket.timeout, ConnectionError):
            # Clients that send nothing, or stop mid-request, still get the page
            pass
        return len(received)


class _FocusPageServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(self, server_address, handler, connection_timeout, max_request_bytes):
        self.connection_timeout = connection_timeout
        self.max_request_bytes = max_request_bytes
        self._connections = set()
        self._connections_lock = threading.Lock()
        super().__init__(server_address, handler)

    def process_request(self, request, client_address):
        with self._connections_lock:
            self._connections.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request):
        with self._connections_lock:
            self._connections.discard(request)
        super().shutdown_request(request)

    def handle_error(self, request, client_address):
        logging.debug(f"Redirect server connection from {client_address} failed", exc_info=True)

    def close_connections(self):
        with self._connections_lock:
            connections = list(self._connections)
            self._connections.clear()
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        return len(connections)


class LocalRedirectServer:
    def __init__(self, host=REDIRECT_HOST, port=REDIRECT_PORT,
                 connection_timeout=CONNECTION_TIMEOUT, max_request_bytes=MAX_REQUEST_BYTES):
        self.host = host
        self.port = port
        self.connection_timeout = connection_timeout
        self.max_request_bytes = max_request_bytes
        self._server = None
        self._thread = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def server_address(self):
        if self._server is None:
            return None
        return self._server.server_address[:2]

    def start(self):
        """Bind the listener and serve in the background; no-op if already running"""
        with self._lock:
            if self._server is not None:
                return
            server = _FocusPageServer(
                (self.host, self.port), FocusPageHandler,
                self.connection_timeout, self.max_request_bytes,
            )
            self._thread = threading.Thread(
                target=server.serve_forever, name="focusblock-redirect", daemon=True
            )
            self._server = server
            self._thread.start()
        logging.info(f"Local redirect server started on {self.server_address[0]}:{self.server_address[1]}")

    def stop(self):
        """Close the listener and end in-flight connections; no-op if not running"""
        with self._lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        dropped = server.close_connections()
        if thread is not None:
            thread.join(timeout=self.connection_timeout)
        logging.info(f"Local redirect server stopped ({dropped} in-flight connections closed)")
