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

__all__ = ("BaseResourceHandle", "CloseStatus")

import io
import logging
from abc import abstractmethod
from enum import Enum, auto
from typing import AnyStr, Generic, TypeVar

U = TypeVar("U", str, bytes)


class CloseStatus(Enum):
    """Enumerated closed/open status of a file handle."""

    OPEN = auto()
    CLOSING = auto()
    CLOSED = auto()


class BaseResourceHandle(io.IOBase, Generic[U]):
    """Base class interface for the handles of remote resources.

    Parameters
    ----------
    mode : `str`
        Handle modes as described in the python `io` module.
    log : `~logging.Logger`
        Logger to used when writing messages.
    url : `str`
        URL of the remote resource, as provided by the caller.
    newline : `str` or `None`, optional
        When doing multiline operations, break the stream on given character.
        Defaults to newline.

    Notes
    -----
    Handles only operate in binary mode. Text access is provided by wrapping
    them in an `io.TextIOWrapper`.
    """

    def __init__(
        self,
        mode: str,
        log: logging.Logger,
        url: str,
        *,
        newline: AnyStr | None = None,
    ) -> None:
        self._mode = mode
        self._log = log
        self._url = url
        self._newline = newline
        self._closed = CloseStatus.OPEN

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def name(self) -> str:
        return self._url

    @property
    def closed(self) -> bool:
        return self._closed == CloseStatus.CLOSED

    def fileno(self) -> int:
        raise io.UnsupportedOperation(f"{type(self).__name__} does not have a file number")

    def isatty(self) -> bool:
        return False

    def truncate(self, size: int | None = None) -> int:
        raise io.UnsupportedOperation(f"{type(self).__name__} does not support truncation")

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("I/O operation on closed file")

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def tell(self) -> int: ...
