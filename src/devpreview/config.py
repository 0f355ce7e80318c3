from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_PORT = 8000
# empty string binds every interface, same as `python -m http.server`
DEFAULT_HOST = ""


def check_port(port: int) -> int:
    if not 1 <= port <= 65535:
        raise ValueError(f"port must be in 1-65535, got {port}")
    return port


def display_url(host: str, port: int) -> str:
    if host in ("", "0.0.0.0", "::"):
        host = "localhost"
    elif ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}"


@dataclass(frozen=True)
class PreviewConfig:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    directory: Path = field(default_factory=Path.cwd)
    reclaim: bool = True

    def validate(self) -> "PreviewConfig":
        check_port(self.port)
        return self
