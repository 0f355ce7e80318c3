from __future__ import annotations

from pathlib import Path


class PreviewError(Exception):
    """Base class for everything the preview launcher reports."""


class PortReclamationFailure(PreviewError):
    """Querying the socket table or signalling a listener failed.

    Never fatal: :func:`devpreview.reaper.reclaim` logs it and carries on,
    leaving the bind in the server as the real availability check.
    """


class BindFailure(PreviewError):
    def __init__(self, port: int, error: OSError) -> None:
        self.port = port
        self.error = error
        reason = error.strerror or str(error)
        super().__init__(f"could not bind port {port}: {reason} (errno {error.errno})")


class DirectoryUnreadable(PreviewError):
    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"content root {path} is not usable: {reason}")
