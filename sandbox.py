"""
sandbox.py — confines untrusted relative paths to the shared root.

Every filesystem target derived from a request goes through safe_join().
Never open a user-supplied path any other way.

Resolution is a point-in-time check: a symlink created inside the root after
safe_join() returns is not caught.
"""

import os
import posixpath

from errors import PathEscape


def normalize_rel_path(raw: str) -> str:
    """Turn user input into a slash-separated path relative to the root.

    Backslashes become slashes and ".." segments are collapsed lexically as if
    the path started at "/", so the result can never climb above the root.
    The root itself is "".
    """
    clean = (raw or "").strip().replace("\\", "/")
    if clean.startswith("./"):
        clean = clean[2:]
    if clean in (".", "/", ""):
        return ""
    clean = posixpath.normpath("/" + clean).lstrip("/")
    if clean == ".":
        return ""
    return clean


def is_within(root: str, target: str) -> bool:
    """True if target is root or a path-segment descendant of it.

    A bare string prefix is not enough: /srv/share-evil is not inside /srv/share.
    """
    if target == root:
        return True
    prefix = root.rstrip(os.sep) + os.sep
    return target.startswith(prefix)


def safe_join(root: str, raw: str) -> str:
    """Join raw under root and return the absolute path.

    Raises PathEscape if the result (after resolving symlinks) lies outside
    root. For targets that do not exist yet, such as upload destinations,
    the parent directory is resolved and checked instead.
    """
    if "\x00" in (raw or ""):
        raise PathEscape()
    normalized = normalize_rel_path(raw)
    root_abs = os.path.abspath(root)
    if normalized:
        joined = os.path.abspath(os.path.join(root_abs, *normalized.split("/")))
    else:
        joined = root_abs
    if not is_within(root_abs, joined):
        raise PathEscape()

    root_real = os.path.realpath(root_abs)
    if not os.path.exists(joined):
        parent_real = os.path.realpath(os.path.dirname(joined))
        if not is_within(root_real, parent_real):
            raise PathEscape()
    # realpath() also follows a dangling leaf symlink to its target
    target_real = os.path.realpath(joined)
    if not is_within(root_real, target_real):
        raise PathEscape()
    return joined


def rel_path_from_root(root: str, absolute: str) -> str:
    rel = os.path.relpath(os.path.abspath(absolute), os.path.abspath(root))
    rel = rel.replace(os.sep, "/")
    if rel == ".":
        return ""
    return rel
