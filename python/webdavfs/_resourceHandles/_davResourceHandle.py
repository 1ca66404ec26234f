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

__all__ = ("DavReadAheadCache", "DavReadResourceHandle", "DavWriteResourceHandle", "WriteState")

import enum
import functools
import io
import logging
import os
import tempfile
from collections.abc import Callable
from http import HTTPStatus
from typing import TYPE_CHECKING, AnyStr, BinaryIO

from .._transport import DavResponse, SupportsFileUpload
from .._upload import FileUploadSource
from ..davclient import SUCCESS_STATUSES
from ..davutils import parse_dav_url, redact_url
from ..errors import DavTransportError, NonSequentialWriteError, make_http_error
from ._baseResourceHandle import BaseResourceHandle, CloseStatus

if TYPE_CHECKING:
    from ..davclient import DavClient


@functools.lru_cache
def _calc_tmpdir_buffer_size(tmpdir: str) -> int:
    """Compute the block size to use for writing files in `tmpdir` as
    256 blocks of typical size (i.e. 4096 bytes) or 10 times the file system
    block size, whichever is higher.

    This is a reasonable compromise between using memory for buffering and
    the number of system calls issued to read from or write to temporary
    files.
    """
    fsstats = os.statvfs(tmpdir)
    return max(10 * fsstats.f_bsize, 256 * 4096)


class DavReadResourceHandle(BaseResourceHandle[bytes]):
    """WebDAV-based specialization of `.BaseResourceHandle` for reading.

    Parameters
    ----------
    mode : `str`
        Handle modes as described in the python `io` module.
    log : `~logging.Logger`
        Logger to used when writing messages.
    url : `str`
        URL of the remote resource.
    client : `DavClient`
        Client to download the resource contents with. The handle owns the
        client's session and closes it when the handle is closed.
    file_size : `int`
        Size in bytes of the remote resource.
    block_size : `int`
        Minimum number of bytes to request per partial read.
    newline : `str` or `None`, optional
        When doing multiline operations, break the stream on given character.
        Defaults to newline.
    """

    def __init__(
        self,
        mode: str,
        log: logging.Logger,
        url: str,
        client: DavClient,
        file_size: int,
        block_size: int,
        *,
        newline: AnyStr | None = None,
    ) -> None:
        super().__init__(mode, log, url, newline=newline)
        self._client: DavClient = client
        self._filesize: int = file_size
        self._current_position = 0
        self._cache: DavReadAheadCache = DavReadAheadCache(
            client=self._client,
            url=parse_dav_url(url).http_url,
            filesize=self._filesize,
            blocksize=block_size,
            log=log,
        )
        self._log.debug("initializing read handle for %s [%d]", redact_url(self._url), id(self))

    @property
    def size(self) -> int:
        return self._filesize

    def close(self) -> None:
        if self._closed != CloseStatus.CLOSED:
            self._log.debug("closing read handle for %s [%d]", redact_url(self._url), id(self))
            self._client.session.close()
            self._closed = CloseStatus.CLOSED

    def flush(self) -> None:
        pass

    def readable(self) -> bool:
        return True

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._log.debug(
            "handle seek for %s: offset=%d, whence=%d, current_position=%d",
            redact_url(self._url),
            offset,
            whence,
            self._current_position,
        )

        match whence:
            case io.SEEK_SET:
                if offset < 0:
                    raise ValueError(f"negative seek value {offset}")
                self._current_position = offset
            case io.SEEK_CUR:
                self._current_position += offset
            case io.SEEK_END:
                self._current_position = self._filesize + offset
            case _:
                raise ValueError(f"unexpected value {whence} for whence in seek()")

        if self._current_position < 0:
            self._current_position = 0

        return self._current_position

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._current_position

    def writable(self) -> bool:
        return False

    def write(self, b: bytes, /) -> int:
        raise io.UnsupportedOperation("DavReadResourceHandles are read only")

    @property
    def _eof(self) -> bool:
        return self._current_position >= self._filesize

    def read(self, size: int = -1) -> bytes:
        self._check_open()
        if size == 0 or self._eof:
            return b""

        if size is None or size < 0:
            # Read up to the end of the file
            size = self._filesize - self._current_position

        output = self._cache.fetch(start=self._current_position, end=self._current_position + size)
        self._current_position += len(output)
        return output

    def read_at(self, size: int, offset: int) -> bytes:
        """Read up to `size` bytes starting at `offset`, and leave the
        current position just after the last byte read.
        """
        self.seek(offset)
        return self.read(size)

    def readinto(self, output: bytearray) -> int:
        """Read up to `len(output)` bytes into `output` and return the number
        of bytes read.

        Parameters
        ----------
        output : `bytearray`
            Byte array to write output into.
        """
        if self._eof or len(output) == 0:
            return 0

        data = self.read(len(output))
        output[: len(data)] = data
        return len(data)

    def read1(self, size: int = -1) -> bytes:
        return self.read(size)


class DavReadAheadCache:
    """Helper read-ahead cache for fetching chunks of a remote file.

    Parameters
    ----------
    client : `DavClient`
        webDAV client to interact with the server to download data.
    url : `str`
        HTTP URL of the resource to download data from.
    filesize : `int`
        Size in bytes of the remote file.
    blocksize : `int`
        Size in bytes of the block for this resource. This is the size we use
        to retrieve data from this resource.
    log : `logging.Logger`
        Logger object to emit log records.

    Notes
    -----
    Behavior of this cache is inspired from fsspec's ReadAheadCache class.
    https://github.com/fsspec/filesystem_spec/blob/master/fsspec/caching.py
    """

    def __init__(
        self, client: DavClient, url: str, filesize: int, blocksize: int, log: logging.Logger
    ) -> None:
        self._client: DavClient = client
        self._url: str = url
        self._filesize: int = filesize
        self._blocksize: int = max(1, blocksize)
        self._cache = b""
        self._start: int = 0
        self._end: int = 0
        self._log: logging.Logger = log

    def fetch(self, start: int, end: int) -> bytes:
        """Fetch a chunk of the file and store it in memory.

        Parameters
        ----------
        start : `int`
            Position of the first byte of the chunk.
        end : `int`
            Position after the last byte of the chunk.

        Returns
        -------
        output: `bytes`
            A chunk of up to end-start bytes. The returned chunk is
            served directly from the in-memory buffer without fetching new
            data from the remote file if it is already cached. Otherwise,
            a new chunk is retrieved from the server and cached in memory.
        """
        start = max(0, start)
        end = min(end, self._filesize)
        if start >= self._filesize or start >= end:
            return b""

        if start >= self._start and end <= self._end:
            # The requested chunk is entirely cached
            return self._cache[start - self._start : end - self._start]

        # The requested chunk is not fully in cache. Repopulate the cache
        # with a number of blocks large enough to satisfy the requested chunk.
        blocks_to_fetch = 1 + ((end - start) // self._blocksize)
        end_range = min(self._filesize, start + self._blocksize * blocks_to_fetch)

        self._log.debug(
            "populating handle cache for %s with %d blocks [%d - %d, total bytes: %d]",
            redact_url(self._url),
            blocks_to_fetch,
            start,
            end_range,
            end_range - start,
        )

        resp: DavResponse = self._client.get_range(self._url, start=start, end=end_range - 1)
        if resp.failed:
            raise DavTransportError("GET", redact_url(self._url), resp.error or "")

        match resp.status:
            case HTTPStatus.PARTIAL_CONTENT:
                self._cache = resp.body
            case HTTPStatus.OK:
                # The server ignored the range and sent the whole file.
                self._cache = resp.body[start:end_range]
            case _:
                raise make_http_error("GET", redact_url(self._url), resp.status, resp.reason)

        self._start = start
        self._end = self._start + len(self._cache)
        return self._cache[start - self._start : end - self._start]


class WriteState(enum.Enum):
    """State of the data written to a `DavWriteResourceHandle`."""

    EMPTY = "empty"
    BUFFERING = "buffering"
    SPILLED = "spilled"
    FLUSHED = "flushed"


class DavWriteResourceHandle(BaseResourceHandle[bytes]):
    """WebDAV-based specialization of `.BaseResourceHandle` for writing.

    Data must be written sequentially. It is accumulated in memory until its
    size would exceed `spill_threshold`; it is then moved to a local
    temporary file and all subsequent writes are appended to that file.
    The data is uploaded with a single PUT request when the handle is synced
    or closed.

    Parameters
    ----------
    mode : `str`
        Handle modes as described in the python `io` module.
    log : `~logging.Logger`
        Logger to used when writing messages.
    url : `str`
        URL of the remote resource.
    client : `DavClient`
        Client to upload data with. The handle owns the client's session and
        closes it when the handle is closed.
    create_parents : `~collections.abc.Callable`
        Called with the URL of the parent directory of `url` to create it,
        when an upload fails because the parent does not exist.
    spill_threshold : `int`
        Maximum number of bytes kept in memory.
    tmpdir : `str`, optional
        Directory to create the temporary file in. If None, the system's
        temporary directory is used.
    newline : `str` or `None`, optional
        When doing multiline operations, break the stream on given character.
        Defaults to newline.
    """

    # Statuses of a failed upload which may be caused by a missing parent
    # directory.
    MISSING_PARENT_STATUSES: frozenset[int] = frozenset(
        {HTTPStatus.BAD_REQUEST, HTTPStatus.NOT_FOUND, HTTPStatus.CONFLICT}
    )

    def __init__(
        self,
        mode: str,
        log: logging.Logger,
        url: str,
        client: DavClient,
        create_parents: Callable[[str], None],
        spill_threshold: int,
        tmpdir: str | None = None,
        *,
        newline: AnyStr | None = None,
    ) -> None:
        super().__init__(mode, log, url, newline=newline)
        self._client: DavClient = client
        self._http_url: str = parse_dav_url(url).http_url
        self._create_parents = create_parents
        self._threshold: int = spill_threshold
        self._tmpdir: str = tmpdir if tmpdir is not None else tempfile.gettempdir()
        self._buffer = bytearray()
        self._dirty: bool = False
        self._flushed: bool = False
        self._offset: int = 0
        self._spill_path: str | None = None
        self._spill_file: BinaryIO | None = None
        self._log.debug("initializing write handle for %s [%d]", redact_url(self._url), id(self))

    @property
    def state(self) -> WriteState:
        if self._spill_path is not None:
            return WriteState.SPILLED
        if self._buffer:
            return WriteState.BUFFERING
        if self._flushed:
            return WriteState.FLUSHED
        return WriteState.EMPTY

    @property
    def spill_path(self) -> str | None:
        """Path of the temporary file the data was spilled to, if any."""
        return self._spill_path

    def readable(self) -> bool:
        return False

    def read(self, size: int = -1) -> bytes:
        raise io.UnsupportedOperation("DavWriteResourceHandles are write only")

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self._offset

    def writable(self) -> bool:
        return True

    def write(self, b: bytes, /) -> int:
        return self.write_at(b, self._offset)

    def write_at(self, data: bytes, offset: int) -> int:
        """Write `data` at `offset`, which must be the current end of the
        data already written.

        Raises
        ------
        NonSequentialWriteError
            If `offset` is not the current end of data.
        """
        self._check_open()
        if offset != self._offset:
            raise NonSequentialWriteError(redact_url(self._url), self._offset, offset)

        size = len(data)
        if self._spill_path is None and len(self._buffer) + size > self._threshold:
            self._spill()

        if self._spill_file is not None:
            self._spill_file.write(data)
        else:
            self._buffer += data

        self._offset += size
        self._dirty = True
        return size

    def _spill(self) -> None:
        """Move the buffered data to a new temporary file."""
        fd, self._spill_path = tempfile.mkstemp(prefix="webdav_upload_", dir=self._tmpdir)
        self._spill_file = os.fdopen(fd, "wb", buffering=_calc_tmpdir_buffer_size(self._tmpdir))
        self._spill_file.write(self._buffer)
        self._log.debug(
            "spilled %d bytes written to %s into %s",
            len(self._buffer),
            redact_url(self._url),
            self._spill_path,
        )
        self._buffer = bytearray()

    def flush(self) -> None:
        # Data is only uploaded on sync() or close().
        pass

    def sync(self) -> None:
        """Upload the data written so far.

        After a successful upload the handle is empty again: the next write
        must be at offset 0 and the next upload replaces the remote file.

        Raises
        ------
        DavProtocolError
            If the upload failed.
        DavTransportError
            If the server could not be reached.
        """
        self._check_open()
        if not self._dirty and self._spill_path is None:
            return

        resp = self._put()
        if not resp.failed and resp.status in DavWriteResourceHandle.MISSING_PARENT_STATUSES:
            parent = self._url.rstrip("/").rsplit("/", 1)[0]
            self._log.debug(
                "upload to %s failed with status %d, creating parent %s",
                redact_url(self._url),
                resp.status,
                redact_url(parent),
            )
            try:
                self._create_parents(parent)
            except (OSError, ValueError) as e:
                # The error of the upload is the one to report.
                self._log.debug("ignoring failure to create parent of %s: %s", redact_url(self._url), e)
            else:
                resp = self._put()

        if resp.failed:
            raise DavTransportError("PUT", redact_url(self._url), resp.error or "")

        if resp.status not in SUCCESS_STATUSES["PUT"]:
            raise make_http_error("PUT", redact_url(self._url), resp.status, resp.reason)

        self._log.debug("uploaded %d bytes to %s", self._offset, redact_url(self._url))
        self._buffer = bytearray()
        self._dirty = False
        self._flushed = True
        self._offset = 0
        self._remove_spill_file()

    def _put(self) -> DavResponse:
        """Upload all the data written so far with a PUT request."""
        if self._spill_file is None or self._spill_path is None:
            return self._client.put(self._http_url, bytes(self._buffer))

        if self._buffer:
            self._spill_file.write(self._buffer)
            self._buffer = bytearray()
        self._spill_file.flush()

        size = os.path.getsize(self._spill_path)
        self._log.debug("streaming %d bytes from %s to %s", size, self._spill_path, redact_url(self._url))
        with FileUploadSource(self._spill_path, size, name=redact_url(self._url)) as source:
            session = self._client.session
            if not isinstance(session, SupportsFileUpload):
                return self._client.put(self._http_url, source=source)

            session.attach_upload_source(source)
            try:
                return self._client.put(self._http_url)
            finally:
                session.detach_upload_source()

    def _remove_spill_file(self) -> None:
        if self._spill_file is not None:
            self._spill_file.close()
            self._spill_file = None

        if self._spill_path is not None:
            try:
                os.remove(self._spill_path)
            except FileNotFoundError:
                pass
            self._spill_path = None

    def close(self) -> None:
        if self._closed == CloseStatus.CLOSED:
            return

        self._log.debug("closing write handle for %s [%d]", redact_url(self._url), id(self))
        try:
            self.sync()
        finally:
            self._closed = CloseStatus.CLOSED
            self._remove_spill_file()
            self._client.session.close()

    def __del__(self) -> None:
        # Data not synced is discarded, only the temporary file is removed.
        if getattr(self, "_closed", CloseStatus.CLOSED) != CloseStatus.CLOSED:
            self._remove_spill_file()
