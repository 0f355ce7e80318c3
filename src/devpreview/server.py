from __future__ import annotations

import logging
import os
import signal
import threading
from contextlib import contextmanager
from enum import Enum
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from .config import DEFAULT_HOST, display_url
from .errors import BindFailure, DirectoryUnreadable, PreviewError


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
REQUEST_TIMEOUT_S = 5.0


class SessionState(str, Enum):
    STARTING = "starting"
    SERVING = "serving"
    STOPPING = "stopping"
    STOPPED = "stopped"


_TRANSITIONS = {
    SessionState.STARTING: {SessionState.SERVING, SessionState.STOPPED},
    SessionState.SERVING: {SessionState.STOPPING},
    SessionState.STOPPING: {SessionState.STOPPED},
    SessionState.STOPPED: set(),
}


class PreviewRequestHandler(SimpleHTTPRequestHandler):
    """Static file handler that reports through ``logging`` instead of stderr."""

    # idle connections (browser preconnects) must not hold up server_close()
    timeout = REQUEST_TIMEOUT_S

    def log_message(self, format: str, *args) -> None:
        logger.info("%s - %s", self.address_string(), format % args)

    def log_error(self, format: str, *args) -> None:
        logger.warning("%s - %s", self.address_string(), format % args)


class PreviewHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    # joined in server_close() so responses in flight can finish
    daemon_threads = False


class ServerSession:
    """One run of the static server on a port.

    ``Starting -> Serving -> Stopping -> Stopped``, or straight from
    ``Starting`` to ``Stopped`` when the content root or the bind fails.
    """

    def __init__(self, port: int, root_directory: Union[str, Path], host: str = DEFAULT_HOST) -> None:
        self.port = port
        self.root_directory = Path(root_directory)
        self.host = host
        self.state = SessionState.STARTING
        self.error: Optional[PreviewError] = None
        self._httpd: Optional[PreviewHTTPServer] = None
        self._lock = threading.RLock()
        self._stop_requested = False
        self._loop_started = False

    @property
    def url(self) -> str:
        return display_url(self.host, self.port)

    def _move(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"session cannot go from {self.state.value} to {new.value}")
        logger.debug("session on port %d: %s -> %s", self.port, self.state.value, new.value)
        self.state = new

    def _resolve_root(self) -> Path:
        root = self.root_directory
        if not root.exists():
            raise DirectoryUnreadable(root, "does not exist")
        if not root.is_dir():
            raise DirectoryUnreadable(root, "not a directory")
        if not os.access(root, os.R_OK | os.X_OK):
            raise DirectoryUnreadable(root, "permission denied")
        return root.resolve()

    def bind(self) -> None:
        with self._lock:
            if self.state is not SessionState.STARTING:
                raise RuntimeError(f"bind() on a {self.state.value} session")
            try:
                root = self._resolve_root()
                handler = partial(PreviewRequestHandler, directory=str(root))
                try:
                    self._httpd = PreviewHTTPServer((self.host, self.port), handler)
                except OSError as exc:
                    raise BindFailure(self.port, exc) from exc
            except PreviewError as exc:
                self.error = exc
                self._move(SessionState.STOPPED)
                raise
            # port 0 asks the OS for any free port
            self.port = self._httpd.server_address[1]
            self._move(SessionState.SERVING)
            if self._stop_requested:
                self._move(SessionState.STOPPING)

    def serve(self, on_serving: Optional[Callable[["ServerSession"], None]] = None) -> None:
        """Block in the request loop until :meth:`stop` is called.

        A session stopped before it got here is closed without serving.
        """
        with self._lock:
            if self._httpd is None or self.state not in (SessionState.SERVING, SessionState.STOPPING):
                raise RuntimeError(f"serve() on a {self.state.value} session")
            skip = self.state is SessionState.STOPPING
            self._loop_started = not skip
        try:
            if skip:
                return
            if on_serving is not None:
                on_serving(self)
            self._httpd.serve_forever()
        except KeyboardInterrupt:
            # only reached when our signal handlers are not installed
            with self._lock:
                if self.state is SessionState.SERVING:
                    self._move(SessionState.STOPPING)
        finally:
            self.close()

    def stop(self) -> bool:
        """Ask the session to shut down. Returns False if it already was.

        A stop requested while still starting takes effect right after bind.
        """
        with self._lock:
            if self.state is SessionState.STARTING:
                if self._stop_requested:
                    return False
                self._stop_requested = True
                return True
            if self.state is not SessionState.SERVING:
                return False
            self._move(SessionState.STOPPING)
            if not self._loop_started:
                return True
            httpd = self._httpd
        # shutdown() waits for serve_forever() to return, which may be running
        # on this very thread (signal handlers run on the main thread)
        threading.Thread(target=httpd.shutdown, name="preview-shutdown", daemon=True).start()
        return True

    def close(self) -> None:
        """Close the listening socket and mark the session stopped. Idempotent."""
        with self._lock:
            if self.state is SessionState.STOPPED:
                return
            httpd = self._httpd
        if httpd is not None:
            httpd.server_close()
        with self._lock:
            if self.state is SessionState.SERVING:
                self._move(SessionState.STOPPING)
            if self.state is not SessionState.STOPPED:
                self._move(SessionState.STOPPED)


@contextmanager
def stop_on_signals(session: ServerSession) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``session.stop()`` while the block runs.

    Signal handlers can only be set from the main thread; elsewhere this is a
    no-op and the caller stops the session itself.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame) -> None:
        name = signal.Signals(signum).name
        if session.stop():
            logger.info("received %s, stopping server on port %d", name, session.port)
        else:
            logger.debug("ignoring %s, server already %s", name, session.state.value)

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def run(
    port: int,
    root_directory: Union[str, Path],
    host: str = DEFAULT_HOST,
    on_serving: Optional[Callable[[ServerSession], None]] = None,
) -> int:
    """Serve ``root_directory`` on ``port`` until interrupted.

    Returns 0 after an interrupt-triggered shutdown and 1 when the server
    never got to serve (unusable content root or failed bind). ``on_serving``
    is called with the live session right before the request loop starts.
    """
    if not 0 <= port <= 65535:
        raise ValueError(f"port must be in 0-65535, got {port}")

    session = ServerSession(port, root_directory, host=host)
    # handlers go in before bind so an early Ctrl+C still ends in close()
    with stop_on_signals(session):
        try:
            session.bind()
        except PreviewError as exc:
            logger.error("%s", exc)
            return EXIT_FAILED
        try:
            session.serve(on_serving)
        finally:
            session.close()
    logger.info("server on port %d stopped", session.port)
    return EXIT_OK
