"""
Path addressing for the graph.

A path is a tuple of non-empty string segments. Paths whose first segment
is ``~<pub>`` live in the namespace of identity ``<pub>``; every other root
is globally writable.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple, Union

from ..errors import MalformedInputError

Path = Tuple[str, ...]
PathLike = Union[Path, Iterable[str], str]

SEPARATOR = "/"
NAMESPACE_PREFIX = "~"

# Application namespace under the shared root
APP_NAMESPACE = "qr_attendance_v1_secure"


def make_path(path: PathLike) -> Path:
    """Normalize and validate a path.

    Strings are split on ``/``; iterables are taken segment by segment.

    Raises:
        MalformedInputError: If the path is empty or a segment is invalid
    """
    if isinstance(path, str):
        segments = tuple(s for s in path.split(SEPARATOR) if s)
    else:
        segments = tuple(path)

    if not segments:
        raise MalformedInputError("Path must have at least one segment")

    errors = []
    for seg in segments:
        if not isinstance(seg, str):
            errors.append(f"Segment {seg!r} is not a string")
        elif not seg:
            errors.append("Empty segment")
        elif SEPARATOR in seg:
            errors.append(f"Segment {seg!r} contains '{SEPARATOR}'")
    if errors:
        raise MalformedInputError(f"Invalid path: {segments!r}", errors=errors)

    return segments


def join(base: PathLike, *segments: str) -> Path:
    """Append segments to a path."""
    return make_path(make_path(base) + tuple(segments))


def parent(path: Path) -> Optional[Path]:
    """Parent path, or None for a root."""
    return path[:-1] if len(path) > 1 else None


def to_text(path: Path) -> str:
    return SEPARATOR.join(path)


def namespace_root(pub: str) -> str:
    """Root segment of an identity's namespace."""
    return f"{NAMESPACE_PREFIX}{pub}"


def namespace_of(path: Path) -> Optional[str]:
    """Public key owning this path, or None for a shared path."""
    head = path[0]
    if head.startswith(NAMESPACE_PREFIX) and len(head) > 1:
        return head[1:]
    return None
