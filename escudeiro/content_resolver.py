#!/usr/bin/env python3
"""
Content resolution for Escudeiro.

Maps request paths onto the content root, classifies what they point at and
enumerates directories one level deep.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from typing import List

import aiofiles.os

from errors import DirectoryReadError, PathEscapeError

logger = logging.getLogger(__name__)

FILES_PREFIX = "/files/"
API_PREFIX = "/api/"


class TargetKind(Enum):
    """What a resolved path points at"""
    DIRECTORY = "directory"
    REGULAR_FILE = "file"
    MISSING = "missing"


@dataclass
class ResolvedTarget:
    """A request path mapped onto the content root"""
    absolute_path: str
    relative_path: str
    kind: TargetKind

    @property
    def is_directory(self) -> bool:
        return self.kind is TargetKind.DIRECTORY

    @property
    def is_file(self) -> bool:
        return self.kind is TargetKind.REGULAR_FILE

    @property
    def exists(self) -> bool:
        return self.kind is not TargetKind.MISSING


@dataclass
class DirectoryEntry:
    name: str
    is_directory: bool


@dataclass
class DirectoryListing:
    """Immediate children of a directory, in enumeration order"""
    current_relative_path: str
    entries: List[DirectoryEntry] = field(default_factory=list)

    @property
    def names(self) -> List[str]:
        return [entry.name for entry in self.entries]


def strip_prefix(request_path: str, prefix: str) -> str:
    """Remove a reserved prefix from a request path"""
    if request_path.startswith(prefix):
        return request_path[len(prefix):]
    if request_path + "/" == prefix:
        return ""
    return request_path.lstrip("/")


def join_within_root(root: str, relative_path: str) -> str:
    """
    Join a user-supplied relative path onto the content root.

    The result is normalized lexically and must stay inside the root;
    ``..`` segments climbing above it and absolute overrides raise
    PathEscapeError.
    """
    root = os.path.abspath(root)
    # A leading slash would make os.path.join discard the root entirely
    candidate = os.path.normpath(os.path.join(root, relative_path.lstrip("/\\")))
    try:
        inside = os.path.commonpath([root, candidate]) == root
    except ValueError:
        inside = False
    if not inside:
        logger.warning(f"Rejected path escaping content root: {relative_path!r}")
        raise PathEscapeError("Not Found", path=relative_path)
    return candidate


async def classify(absolute_path: str) -> TargetKind:
    """Stat a path and classify it"""
    try:
        st = await aiofiles.os.stat(absolute_path)
    except OSError as e:
        logger.debug(f"Stat failed for {absolute_path}: {e}")
        return TargetKind.MISSING
    if stat.S_ISDIR(st.st_mode):
        return TargetKind.DIRECTORY
    if stat.S_ISREG(st.st_mode):
        return TargetKind.REGULAR_FILE
    # Sockets, fifos and devices are never served
    return TargetKind.MISSING


async def resolve_target(root: str, request_path: str, prefix: str = "/") -> ResolvedTarget:
    """
    Resolve a request path against the content root.

    Args:
        root: Absolute content root directory
        request_path: URL path, always starting with '/'
        prefix: Reserved prefix to strip ('/files/' or '/')

    Returns:
        ResolvedTarget; stat failures yield TargetKind.MISSING
    """
    relative_path = strip_prefix(request_path, prefix)
    absolute_path = join_within_root(root, relative_path)
    kind = await classify(absolute_path)
    return ResolvedTarget(absolute_path=absolute_path, relative_path=relative_path, kind=kind)


async def list_directory(target: ResolvedTarget) -> DirectoryListing:
    """
    Enumerate the immediate children of a directory.

    No recursion, no hidden-file filtering. Raises DirectoryReadError when the
    directory cannot be opened, e.g. it vanished after being resolved.
    """
    try:
        names = await aiofiles.os.listdir(target.absolute_path)
    except OSError as e:
        logger.error(f"Failed to list directory {target.absolute_path}: {e}")
        raise DirectoryReadError("Failed to list directory", path=target.absolute_path) from e

    entries = []
    for name in names:
        is_dir = await aiofiles.os.path.isdir(os.path.join(target.absolute_path, name))
        entries.append(DirectoryEntry(name=name, is_directory=is_dir))

    return DirectoryListing(current_relative_path=target.relative_path, entries=entries)


async def has_top_level_php(root: str) -> bool:
    """Check whether the content root directly contains any .php file"""
    try:
        names = await aiofiles.os.listdir(root)
    except OSError as e:
        logger.error(f"Failed to scan content root {root}: {e}")
        return False
    return any(name.lower().endswith(".php") for name in names)


def is_php_file(path: str) -> bool:
    return os.path.splitext(path)[1].lower() == ".php"
