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

__all__ = ("BufferUploadSource", "FileUploadSource", "UploadProgress", "UploadSource")

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import BinaryIO, Protocol, runtime_checkable

log = logging.getLogger(__name__)

_MEBIBYTE = 1_048_576


@runtime_checkable
class UploadSource(Protocol):
    """Provider of the bytes of a request body.

    Objects implementing this protocol are file-like enough to be used as
    the body of a request sent via `urllib3`.
    """

    @property
    def size(self) -> int:
        """Total number of bytes this source delivers."""
        ...

    def read(self, size: int = -1) -> bytes:
        """Return up to `size` bytes, or an empty bytes object at EOF."""
        ...

    def tell(self) -> int:
        """Return the number of bytes delivered so far."""
        ...

    def rewind(self) -> None:
        """Restart delivering bytes from the beginning."""
        ...


class BufferUploadSource:
    """Serve request body bytes from an in-memory buffer.

    Parameters
    ----------
    data : `bytes` or `bytearray` or `memoryview`
        Bytes to serve. The buffer is not copied.
    """

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(data)
        self._position: int = 0

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def exhausted(self) -> bool:
        return self._position >= len(self._data)

    def read(self, size: int = -1) -> bytes:
        if self.exhausted:
            return b""

        end = len(self._data) if size is None or size < 0 else min(len(self._data), self._position + size)
        chunk = self._data[self._position : end].tobytes()
        self._position = end
        return chunk

    def tell(self) -> int:
        return self._position

    def rewind(self) -> None:
        self._position = 0


@dataclass
class UploadProgress:
    """Progress of a streaming upload."""

    total_size: int
    bytes_uploaded: int = 0
    last_percent: int = -1
    start_time: float = 0.0
    last_report_time: float = 0.0

    @property
    def percent(self) -> int:
        return 100 if self.total_size == 0 else (self.bytes_uploaded * 100) // self.total_size

    def throughput(self, now: float) -> float | None:
        """Return the upload rate in MiB/s, or None if no time elapsed since
        the upload started.
        """
        elapsed = now - self.start_time
        if elapsed <= 0:
            return None

        return self.bytes_uploaded / _MEBIBYTE / elapsed


class FileUploadSource:
    """Serve request body bytes by reading sequentially from a local file.

    Parameters
    ----------
    path : `str`
        Path to the local file to upload.
    size : `int`
        Number of bytes to upload. Reading stops at EOF if the file is
        shorter.
    name : `str`, optional
        Name of the upload destination, used in progress messages.
    on_progress : `~collections.abc.Callable`, optional
        Called with the `UploadProgress` and the throughput estimate in MiB/s
        (or None) each time progress is reported.
    clock : `~collections.abc.Callable`, optional
        Monotonic clock, in seconds.

    Notes
    -----
    Progress is reported when the integer percentage of bytes delivered
    changes and either is a multiple of 5 or at least 2 seconds elapsed
    since the last report. Reports are logged at INFO level.
    """

    # Minimum time in seconds between two progress reports which percentage
    # is not a multiple of 5.
    REPORT_INTERVAL: float = 2.0

    def __init__(
        self,
        path: str,
        size: int,
        name: str | None = None,
        on_progress: Callable[[UploadProgress, float | None], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = path
        self._size = size
        self._name = name if name is not None else path
        self._on_progress = on_progress
        self._clock = clock
        self._file: BinaryIO = open(path, "rb")
        self._progress = UploadProgress(total_size=size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def progress(self) -> UploadProgress:
        return self._progress

    def read(self, size: int = -1) -> bytes:
        remaining = self._size - self._progress.bytes_uploaded
        if remaining <= 0:
            return b""

        size = remaining if size is None or size < 0 else min(size, remaining)
        chunk = self._file.read(size)
        if chunk:
            self._record(len(chunk))

        return chunk

    def tell(self) -> int:
        return self._progress.bytes_uploaded

    def rewind(self) -> None:
        self._file.seek(0)
        self._progress = UploadProgress(total_size=self._size)

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> FileUploadSource:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _record(self, nbytes: int) -> None:
        progress = self._progress
        now = self._clock()
        if progress.bytes_uploaded == 0:
            progress.start_time = progress.last_report_time = now

        progress.bytes_uploaded += nbytes
        if self._size <= 0:
            return

        percent = progress.percent
        if percent == progress.last_percent:
            return

        if percent % 5 != 0 and now - progress.last_report_time < FileUploadSource.REPORT_INTERVAL:
            return

        rate = progress.throughput(now)
        if rate is None:
            log.info(
                "upload progress for %s: %d%% (%d/%d MiB)",
                self._name,
                percent,
                progress.bytes_uploaded // _MEBIBYTE,
                self._size // _MEBIBYTE,
            )
        else:
            log.info(
                "upload progress for %s: %d%% (%d/%d MiB) - %.2f MiB/s",
                self._name,
                percent,
                progress.bytes_uploaded // _MEBIBYTE,
                self._size // _MEBIBYTE,
                rate,
            )

        progress.last_percent = percent
        progress.last_report_time = now
        if self._on_progress is not None:
            self._on_progress(progress, rate)
