"""Local HTTP listener that receives OAuth authorization redirects.

Serves ``GET /callback?code=&state=&error=`` on the loopback interface. The
port is negotiated: each preferred port is tried in order, so redirect URIs
pre-registered with providers keep working, then an OS-assigned port is used.
"""

from __future__ import annotations

import asyncio
import errno
import html
import logging
import socket
from collections.abc import Awaitable, Callable, Sequence

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, Response
from starlette.routing import Route

from warden.errors import CallbackServerError, WardenError

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
STARTUP_TIMEOUT = 5.0
SHUTDOWN_TIMEOUT = 5.0

CallbackHandler = Callable[[str | None, str | None, str | None], Awaitable[object]]

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{title}</title></head>
  <body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
    <h1>{title}</h1>
    <p>{message}</p>
  </body>
</html>
"""


def _render_page(title: str, message: str) -> str:
    return _PAGE_TEMPLATE.format(title=html.escape(title), message=html.escape(message))


class CallbackServer:
    """Single local listener shared by all in-flight authorization attempts.

    Attempts are multiplexed by their ``state`` parameter; the server itself
    only forwards query parameters to the handler and renders the outcome.
    """

    def __init__(
        self,
        handler: CallbackHandler,
        host: str = "127.0.0.1",
        preferred_ports: Sequence[int] = (3000, 3001, 3002, 3003, 3004),
    ):
        self._handler = handler
        self._host = host
        self._preferred_ports = list(preferred_ports)

        self._app = Starlette(
            routes=[Route(CALLBACK_PATH, self._handle_callback, methods=["GET"])]
        )
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._port: int | None = None
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    @property
    def port(self) -> int | None:
        return self._port if self.is_running else None

    @property
    def callback_url(self) -> str | None:
        if not self.is_running:
            return None
        return f"http://localhost:{self._port}{CALLBACK_PATH}"

    async def start(self) -> str:
        """Start listening, or reuse the running listener.

        Returns:
            The callback URL, ``http://localhost:{port}/callback``

        Raises:
            CallbackServerError: If binding fails for a reason other than
                the address being in use, or the server does not come up
        """
        async with self._start_lock:
            if self.is_running:
                return self.callback_url

            sock = self._bind()
            port = sock.getsockname()[1]

            config = uvicorn.Config(
                app=self._app,
                log_config=None,
                log_level="warning",
                lifespan="off",
                access_log=False,
            )
            server = uvicorn.Server(config)
            serve_task = asyncio.create_task(server.serve(sockets=[sock]))

            try:
                await asyncio.wait_for(
                    self._wait_started(server, serve_task), STARTUP_TIMEOUT
                )
            except Exception as e:
                server.should_exit = True
                serve_task.cancel()
                sock.close()
                raise CallbackServerError(
                    f"OAuth callback server failed to start on port {port}: {e}"
                ) from e

            self._server = server
            self._serve_task = serve_task
            self._socket = sock
            self._port = port

            logger.info(f"OAuth callback server listening on {self._host}:{port}")
            return self.callback_url

    async def _wait_started(
        self, server: uvicorn.Server, serve_task: asyncio.Task[None]
    ) -> None:
        while not server.started:
            if serve_task.done():
                # Surfaces the exception that ended serve(), if any
                serve_task.result()
                raise CallbackServerError("OAuth callback server exited during startup")
            await asyncio.sleep(0.01)

    def _bind(self) -> socket.socket:
        for port in self._preferred_ports:
            try:
                return self._bind_port(port)
            except OSError as e:
                if e.errno != errno.EADDRINUSE:
                    raise CallbackServerError(
                        f"Cannot bind OAuth callback server to port {port}: {e}"
                    ) from e
                logger.debug(f"Callback port {port} is in use, trying next")

        logger.info("All preferred callback ports are in use, using an ephemeral port")
        try:
            return self._bind_port(0)
        except OSError as e:
            raise CallbackServerError(
                f"Cannot bind OAuth callback server to an ephemeral port: {e}"
            ) from e

    def _bind_port(self, port: int) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self._host, port))
            sock.listen(16)
        except OSError:
            sock.close()
            raise
        sock.setblocking(False)
        return sock

    async def stop(self) -> None:
        """Stop the listener. Safe to call when not running."""
        server, serve_task, sock = self._server, self._serve_task, self._socket
        self._server = self._serve_task = self._socket = None
        self._port = None

        if server is None or serve_task is None:
            return

        server.should_exit = True
        try:
            await asyncio.wait_for(serve_task, SHUTDOWN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("OAuth callback server did not stop in time, cancelling")
            serve_task.cancel()
        finally:
            if sock is not None:
                sock.close()

        logger.info("OAuth callback server stopped")

    async def _handle_callback(self, request: Request) -> Response:
        code = request.query_params.get("code")
        state = request.query_params.get("state")
        error = request.query_params.get("error")

        if error is None and (not code or not state):
            return HTMLResponse(
                _render_page(
                    "Authorization failed", "The callback is missing its code or state."
                ),
                status_code=400,
            )

        try:
            await self._handler(code, state, error)
        except WardenError as e:
            logger.warning(f"OAuth callback rejected: {e}")
            return HTMLResponse(
                _render_page("Authorization failed", str(e)), status_code=400
            )
        except Exception as e:
            logger.error(f"Error handling OAuth callback: {e}")
            return HTMLResponse(
                _render_page("Authorization failed", "An internal error occurred."),
                status_code=500,
            )

        return HTMLResponse(
            _render_page(
                "Authorization complete",
                "You can close this window and return to the application.",
            )
        )
