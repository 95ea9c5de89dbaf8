"""Loopback HTTP server for locally produced icons.

The project generator only accepts icon URLs. A rasterized SVG icon exists
only in memory, so it is published on 127.0.0.1 for the duration of the
project generation and torn down afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import AsyncIterator

logger = logging.getLogger(__name__)

ICON_PATH = "/icon.png"


def _make_handler(data: bytes) -> type[BaseHTTPRequestHandler]:
    class IconHandler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            if self.path.split("?", 1)[0] != ICON_PATH:
                self.send_error(404)
                return
            self.send_response(200)
            self.send_header("Content-Type", "image/png")
            self.send_header("Content-Length", str(len(data)))
            self.send_header("Cache-Control", "no-store")
            self.end_headers()
            self.wfile.write(data)

        def log_message(self, format: str, *args) -> None:
            logger.debug(f"icon server: {format % args}")

    return IconHandler


def _stop(server: ThreadingHTTPServer, thread: threading.Thread) -> None:
    # shutdown() waits for the serve_forever poll loop to notice
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@asynccontextmanager
async def serve_png(data: bytes) -> AsyncIterator[str]:
    """Serve PNG bytes on an ephemeral loopback port.

    Yields:
        The icon URL, e.g. http://127.0.0.1:41234/icon.png

    The listener is shut down in a worker thread when the block exits, on
    success or failure.
    """
    server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(data))
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, name="icon-server", daemon=True)
    thread.start()

    port = server.server_address[1]
    logger.debug(f"Serving icon on 127.0.0.1:{port}")
    try:
        yield f"http://127.0.0.1:{port}{ICON_PATH}"
    finally:
        await asyncio.to_thread(_stop, server, thread)
        logger.debug(f"Stopped icon server on 127.0.0.1:{port}")
