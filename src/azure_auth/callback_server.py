"""
Local OAuth callback server for Azure AD sign-in.

This module provides a minimal loopback HTTP listener that receives the
browser redirect at the end of the authorization flow. It is not a
general HTTP server: it parses only the request line of each connection
and accepts exactly one valid callback.

The listener runs a blocking poll loop on a dedicated thread:
1. Binds 127.0.0.1 on the fixed callback port
2. Polls a non-blocking accept, sleeping briefly between polls
3. Checks the cancellation event on every iteration
4. Serves a success or error page for the callback and returns its URL
5. Releases the port on every exit path

Malformed, wrong-method, wrong-path and code-less requests get a plain
text 400/404/405 and the listener keeps waiting.
"""

import asyncio
import enum
import html
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from .config import AzureOAuthConfig

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 4096


class CallbackStatus(enum.Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class CallbackResult:
    """
    One-shot outcome of the callback server.

    Attributes:
        status: Which branch of the outcome this is
        url: Full callback URL (success only); may carry an OAuth error
        message: Failure description (error only)
    """

    status: CallbackStatus
    url: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, url: str) -> "CallbackResult":
        return cls(status=CallbackStatus.SUCCESS, url=url)

    @classmethod
    def cancelled(cls) -> "CallbackResult":
        return cls(status=CallbackStatus.CANCELLED)

    @classmethod
    def error(cls, message: str) -> "CallbackResult":
        return cls(status=CallbackStatus.ERROR, message=message)

    def __repr__(self) -> str:
        # The URL carries the authorization code
        return f"CallbackResult(status={self.status.value}, message={self.message!r})"


PAGE_STYLE = """
        * { margin: 0; padding: 0; box-sizing: border-box; }
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
        }
        .container {
            background: white;
            padding: 3rem;
            border-radius: 1rem;
            box-shadow: 0 25px 50px -12px rgba(0, 0, 0, 0.25);
            text-align: center;
            max-width: 400px;
        }
        .icon {
            width: 80px;
            height: 80px;
            border-radius: 50%;
            display: flex;
            align-items: center;
            justify-content: center;
            margin: 0 auto 1.5rem;
        }
        .icon svg { width: 40px; height: 40px; stroke: white; stroke-width: 3; fill: none; }
        .ok { background: #10B981; }
        .failed { background: #EF4444; }
        h1 { color: #1F2937; font-size: 1.5rem; margin-bottom: 0.5rem; }
        p { color: #6B7280; margin-bottom: 1.5rem; }
        .hint { font-size: 0.875rem; color: #9CA3AF; }
"""

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title}</title>
    <style>{style}</style>
</head>
<body>
    <div class="container">
        <div class="icon {icon_class}">
            <svg viewBox="0 0 24 24">{icon}</svg>
        </div>
        <h1>{title}</h1>
        <p>{message}</p>
        <p class="hint">{hint}</p>
    </div>
</body>
</html>"""

CHECK_ICON = '<polyline points="20 6 9 17 4 12"></polyline>'
CROSS_ICON = (
    '<line x1="18" y1="6" x2="6" y2="18"></line>'
    '<line x1="6" y1="6" x2="18" y2="18"></line>'
)

DEFAULT_ERROR_DESCRIPTION = "Authentication was cancelled or failed."


def render_success_page() -> str:
    """Styled page shown after a successful sign-in redirect."""
    return PAGE_TEMPLATE.format(
        title="Authentication Successful!",
        style=PAGE_STYLE,
        icon_class="ok",
        icon=CHECK_ICON,
        message="You have been signed in to Azure PIM.",
        hint="You can close this tab now.",
    )


def render_error_page(description: str) -> str:
    """Styled page shown when the provider redirected with an error."""
    return PAGE_TEMPLATE.format(
        title="Authentication Failed",
        style=PAGE_STYLE,
        icon_class="failed",
        icon=CROSS_ICON,
        message=html.escape(description),
        hint="You can close this tab and try again.",
    )


def _http_response(status: int, reason: str, content_type: str, body: str) -> bytes:
    payload = body.encode("utf-8")
    head = (
        f"HTTP/1.1 {status} {reason}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(payload)}\r\n"
        "Connection: close\r\n"
        "\r\n"
    )
    return head.encode("ascii") + payload


def _html_response(body: str) -> bytes:
    return _http_response(200, "OK", "text/html; charset=utf-8", body)


def _text_response(status: int, message: str) -> bytes:
    return _http_response(status, message, "text/plain; charset=utf-8", message)


class OAuthCallbackServer:
    """
    Single-shot loopback listener for the OAuth redirect.

    ``serve()`` blocks the calling thread; ``start()`` runs it on a
    dedicated thread and hands the result to an asyncio loop through a
    single-slot queue.
    """

    def __init__(self, config: AzureOAuthConfig):
        """
        Initialize callback server.

        Args:
            config: OAuth configuration with callback port and path
        """
        self.config = config
        self.bound_port: Optional[int] = None
        self._cancel_event = threading.Event()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Block until the socket is bound (or the server gave up)."""
        return self._ready.wait(timeout)

    def cancel(self) -> None:
        """Signal the poll loop to stop; it exits within one poll interval."""
        self._cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the listener thread to release its port."""
        if self._thread is not None:
            self._thread.join(timeout)

    def callback_url_for(self, path: str) -> str:
        """Reconstruct the full callback URL from a request path."""
        return f"http://{self.config.callback_host}:{self.bound_port}{path}"

    def serve(self) -> CallbackResult:
        """
        Run the poll loop until one valid callback or cancellation.

        Returns:
            CallbackResult: success with the full callback URL, cancelled,
            or error when binding or accepting fails
        """
        address = ("127.0.0.1", self.config.callback_port)
        try:
            listener = socket.create_server(address)
        except OSError as e:
            logger.error("Failed to bind callback server to %s:%s: %s", *address, e)
            self._ready.set()
            return CallbackResult.error(f"Failed to start server: {e}")

        try:
            listener.setblocking(False)
            self.bound_port = listener.getsockname()[1]
            logger.info("OAuth callback server listening on 127.0.0.1:%s", self.bound_port)
            self._ready.set()
            return self._poll(listener)
        finally:
            listener.close()
            self._ready.set()
            logger.debug("OAuth callback server released port %s", self.bound_port)

    def _poll(self, listener: socket.socket) -> CallbackResult:
        while True:
            if self._cancel_event.is_set():
                logger.info("Callback server cancelled")
                return CallbackResult.cancelled()

            try:
                conn, peer = listener.accept()
            except BlockingIOError:
                time.sleep(self.config.callback_poll_interval)
                continue
            except OSError as e:
                logger.error("Error accepting connection: %s", e)
                return CallbackResult.error(f"Connection error: {e}")

            logger.debug("Connection from %s", peer)
            with conn:
                url = self._handle_connection(conn)
            if url is not None:
                logger.info("OAuth callback received")
                return CallbackResult.success(url)

    def _handle_connection(self, conn: socket.socket) -> Optional[str]:
        """
        Serve one connection.

        Returns:
            The callback URL if this was a valid callback, None otherwise
        """
        conn.setblocking(True)
        conn.settimeout(self.config.callback_read_timeout)
        try:
            raw = conn.recv(READ_BUFFER_SIZE)
        except OSError as e:
            logger.debug("Failed to read request: %s", e)
            return None
        if not raw:
            return None

        response, url = self._route(raw.decode("utf-8", errors="replace"))
        try:
            conn.sendall(response)
        except OSError as e:
            logger.debug("Failed to write response: %s", e)
        return url

    def _route(self, request: str) -> Tuple[bytes, Optional[str]]:
        request_line = request.split("\r\n", 1)[0].split("\n", 1)[0]
        parts = request_line.split()
        if len(parts) < 2:
            return _text_response(400, "Bad Request"), None

        method, path = parts[0], parts[1]
        logger.debug("Received %s request", method)

        if method != "GET":
            return _text_response(405, "Method Not Allowed"), None

        if not path.startswith(self.config.callback_path):
            return _text_response(404, "Not Found"), None

        params = parse_qs(urlsplit(path).query, keep_blank_values=True)

        if "error" in params:
            description = params.get("error_description", [DEFAULT_ERROR_DESCRIPTION])[0]
            # Still return the URL so the coordinator can surface the error
            return _html_response(render_error_page(description)), self.callback_url_for(path)

        if not params.get("code", [""])[0]:
            return _text_response(400, "Missing authorization code"), None

        return _html_response(render_success_page()), self.callback_url_for(path)

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> "asyncio.Queue[CallbackResult]":
        """
        Run ``serve()`` on a dedicated thread.

        Must be called from the event loop thread.

        Args:
            loop: Loop that receives the result (defaults to the running loop)

        Returns:
            Single-slot queue that receives the CallbackResult
        """
        loop = loop or asyncio.get_running_loop()
        handoff: "asyncio.Queue[CallbackResult]" = asyncio.Queue(maxsize=1)

        def run() -> None:
            try:
                result = self.serve()
            except Exception as e:  # keep the awaiting side from hanging
                logger.exception("Callback server crashed")
                result = CallbackResult.error(f"Server error: {e}")
            try:
                loop.call_soon_threadsafe(handoff.put_nowait, result)
            except RuntimeError:
                logger.debug("Event loop closed before callback result was delivered")

        self._thread = threading.Thread(target=run, name="oauth-callback-server", daemon=True)
        self._thread.start()
        return handoff

    async def stop(self) -> None:
        """Cancel the listener and wait until its port is released."""
        self.cancel()
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join)
