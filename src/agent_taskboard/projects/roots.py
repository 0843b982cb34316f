"""Client-declared filesystem roots.

An agent's client declares the directories it works in as URIs. The resolver
asks a :class:`RootsProvider` for them and uses the first ``file://`` entry.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional, Protocol, Sequence
from urllib.parse import unquote, urlparse


class RootsProvider(Protocol):
    """Supplies the root URIs declared for a project's client session."""

    def list_roots(self, project_name: str) -> Sequence[str]:
        ...


class StaticRootsProvider:
    """Returns the same root list for every project."""

    def __init__(self, roots: Sequence[str]) -> None:
        self._roots = list(roots)

    def list_roots(self, project_name: str) -> Sequence[str]:
        return list(self._roots)


class MappingRootsProvider:
    """Per-project roots, with an optional default list for unknown projects."""

    def __init__(self, roots: Mapping[str, Sequence[str] | str], default: Sequence[str] = ()) -> None:
        self._roots = {k: [v] if isinstance(v, str) else list(v) for k, v in roots.items()}
        self._default = list(default)

    def list_roots(self, project_name: str) -> Sequence[str]:
        return list(self._roots.get(project_name, self._default))


def file_uri_to_path(uri: str) -> Optional[Path]:
    """Convert a ``file://`` URI to a path; other schemes return ``None``."""
    if not uri.startswith("file://"):
        return None
    parsed = urlparse(uri)
    path = unquote(parsed.path)
    if os.name == "nt" and len(path) >= 3 and path[0] == "/" and path[2] == ":":
        path = path[1:]
    if parsed.netloc and parsed.netloc != "localhost":
        path = f"//{parsed.netloc}{path}"
    return Path(path) if path else None


def first_file_root(uris: Sequence[str]) -> Optional[Path]:
    """Return the first ``file://`` root in *uris*, or ``None``."""
    for uri in uris:
        path = file_uri_to_path(uri)
        if path is not None:
            return path
    return None
