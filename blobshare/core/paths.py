"""
Manifest path codec.

Converts canonical filesystem paths into collection entry names and back.
Names always use ``/`` as their only separator. A component that itself
contains ``/`` or ``\\`` is an error on both sides: the decoder splits on
``/``, so a component able to smuggle one in could address a sibling of the
export root.
"""

from pathlib import Path, PurePath
from typing import List, Union

from .errors import InvalidPathError

SEPARATOR = "/"
FORBIDDEN_IN_COMPONENT = ("/", "\\", "\x00")


def _check_name_type(name) -> None:
    if not isinstance(name, str):
        raise InvalidPathError(f"entry name must be a string, got {type(name).__name__}")


def _check_component(component: str) -> None:
    if component in ("", ".", ".."):
        raise InvalidPathError(f"invalid path component {component!r}")
    for ch in FORBIDDEN_IN_COMPONENT:
        if ch in component:
            raise InvalidPathError(f"invalid path component {component!r}")


def encode_path(path: Union[str, PurePath], must_be_relative: bool = True) -> str:
    """
    Convert an already canonical path to a manifest name.

    Args:
        path: Canonical path (no symlinks, no ``.``/``..``)
        must_be_relative: Reject a leading root marker instead of encoding it

    Returns:
        Name using ``/`` between components. A permitted root marker becomes
        exactly one leading ``/``.

    Raises:
        InvalidPathError: On drive prefixes, parent/self references, empty
            paths, components containing a separator, or a root marker when
            ``must_be_relative`` is set
    """
    pure = PurePath(path)
    if pure.drive:
        raise InvalidPathError(f"invalid path component {pure.drive!r}")

    prefix = ""
    parts: List[str] = list(pure.parts)
    if pure.root:
        if must_be_relative:
            raise InvalidPathError(f"path {str(pure)!r} must be relative")
        # POSIX keeps "//" as a distinct anchor; it still encodes to one "/"
        prefix = SEPARATOR
        parts = parts[1:]

    if not parts:
        raise InvalidPathError(f"path {str(pure)!r} has no components")

    for part in parts:
        _check_component(part)

    return prefix + SEPARATOR.join(parts)


def decode_path(name: str, root: Union[str, Path]) -> Path:
    """
    Resolve a manifest name to a path below ``root``.

    Args:
        name: Collection entry name
        root: Export destination directory

    Returns:
        ``root`` joined with every component of ``name``

    Raises:
        InvalidPathError: If any component is empty, a parent/self reference,
            or contains a separator
    """
    _check_name_type(name)
    path = Path(root)
    for part in name.split(SEPARATOR):
        _check_component(part)
        path = path / part
    return path


def validate_name(name: str) -> None:
    """Check that ``name`` is a valid relative manifest name."""
    _check_name_type(name)
    for part in name.split(SEPARATOR):
        _check_component(part)
