# This file is part of webdavfs.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("DavGlobber", "has_wildcard", "match_segments", "split_segments")

import fnmatch
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .davclient import SUCCESS_STATUSES, extract_hrefs
from .davutils import parse_dav_url, redact_url

if TYPE_CHECKING:
    from .davclient import DavClient

log = logging.getLogger(__name__)

_WILDCARDS = "*?["


def has_wildcard(path: str) -> bool:
    return any(c in path for c in _WILDCARDS)


def split_segments(path: str) -> list[str]:
    """Split a path into its non-empty '/'-separated segments."""
    return [segment for segment in path.split("/") if segment]


def match_segments(path: Sequence[str], pattern: Sequence[str]) -> bool:
    """Return True if the path segments `path` match the glob segments
    `pattern`.

    Each pattern segment matches exactly one path segment, following
    `fnmatch` rules for '*', '?' and '[...]', except '**' which matches
    any number of path segments, including none.

    Parameters
    ----------
    path : `~collections.abc.Sequence` [`str`]
        Segments of the path to match, e.g. ``["data", "2024", "a.csv"]``.
    pattern : `~collections.abc.Sequence` [`str`]
        Segments of the glob pattern, e.g. ``["data", "**", "*.csv"]``.
    """
    if not pattern:
        return not path

    head = pattern[0]
    if head == "**":
        if len(pattern) == 1:
            return True

        # Try every possible number of segments consumed by '**'.
        return any(match_segments(path[consumed:], pattern[1:]) for consumed in range(len(path) + 1))

    if not path:
        return False

    return fnmatch.fnmatchcase(path[0], head) and match_segments(path[1:], pattern[1:])


class DavGlobber:
    """Find the files matching a glob pattern on a webDAV server.

    Parameters
    ----------
    client : `DavClient`
        Client to send PROPFIND requests with.
    """

    def __init__(self, client: DavClient) -> None:
        self._client = client

    def glob(self, pattern: str) -> list[str]:
        """Return the URLs of the files matching `pattern`.

        Parameters
        ----------
        pattern : `str`
            URL which path may include the wildcards '*', '?', '[...]'
            and '**', e.g. 'storagebox://u12345/data/**/*.parquet'.

        Returns
        -------
        urls : `list` [`str`]
            URLs of the matching files, in the same form as `pattern`
            (a 'storagebox://' pattern yields 'storagebox://' URLs). If
            `pattern` has no wildcard it is returned as is, without
            checking the file exists. Directories are never returned.

        Notes
        -----
        The directories below the longest wildcard-free prefix of the
        pattern are listed with PROPFIND requests of depth 1. Directories
        which cannot be listed are ignored, so an unreachable root yields
        an empty list rather than an error.
        """
        parsed = parse_dav_url(pattern)
        if not has_wildcard(parsed.path):
            return [pattern]

        first_wildcard = next(i for i, c in enumerate(parsed.path) if c in _WILDCARDS)
        root = parsed.path[: parsed.path.rfind("/", 0, first_wildcard) + 1]
        pattern_segments = split_segments(parsed.path)
        recursive = "**" in pattern_segments
        http_origin = f"{parsed.scheme}://{parsed.host}"

        matches: list[str] = []
        visited: set[str] = set()
        pending: list[str] = [root]
        while pending:
            directory = pending.pop(0)
            if directory in visited:
                continue
            visited.add(directory)

            files, subdirs = self._list(http_origin + directory, directory)
            for href in files:
                if match_segments(split_segments(href), pattern_segments):
                    matches.append(parsed.origin + href)

            for subdir in subdirs:
                if subdir in visited:
                    continue
                if recursive or len(split_segments(subdir)) < len(pattern_segments):
                    pending.append(subdir)

        log.debug("glob %s matched %d files", redact_url(pattern), len(matches))
        return matches

    def _list(self, url: str, directory: str) -> tuple[list[str], list[str]]:
        """List the members of a directory.

        Returns the paths of the files and of the subdirectories found. The
        directory itself is not included.
        """
        resp = self._client.propfind(url, depth=1)
        if resp.failed or resp.status not in SUCCESS_STATUSES["PROPFIND"]:
            log.debug(
                "ignoring directory %s: PROPFIND failed with %s",
                redact_url(url),
                resp.error if resp.failed else f"status {resp.status}",
            )
            return [], []

        files: list[str] = []
        subdirs: list[str] = []
        for href in extract_hrefs(resp.body):
            if href.rstrip("/") == directory.rstrip("/"):
                continue
            if href.endswith("/"):
                subdirs.append(href)
            else:
                files.append(href)

        return files, subdirs
