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

__all__ = ("CONFIG_ENV_VAR", "DavDirectoryTreeBuilder", "DavFileSystem")

import contextlib
import io
import logging
import re
import time
from collections.abc import Callable, Iterator
from http import HTTPStatus
from typing import IO, Any

from ._glob import DavGlobber, split_segments
from ._resourceHandles import BaseResourceHandle, DavReadResourceHandle, DavWriteResourceHandle
from ._retry import RetryPolicy
from ._transport import DavResponse, DavSession, TransportStats
from .davclient import SUCCESS_STATUSES, DavClient, extract_hrefs
from .davutils import (
    ConfigCredentialProvider,
    CredentialProvider,
    DavConfig,
    DavConfigPool,
    ParsedDavUrl,
    is_webdav_url,
    parse_dav_url,
    redact_url,
)
from .errors import DavProtocolError, DavTransportError, make_http_error

log = logging.getLogger(__name__)

# Name of the environment variable which value is the path of the
# configuration file of the webDAV endpoints.
CONFIG_ENV_VAR = "WEBDAVFS_CONFIG"

_HEAD_SUCCESS_STATUSES = frozenset({HTTPStatus.OK, HTTPStatus.NO_CONTENT})

_CONTENT_LENGTH_PATTERN = re.compile(r"<(?:[Dd]:)?getcontentlength>\s*(\d+)\s*</(?:[Dd]:)?getcontentlength>")

# Callable building a session from an endpoint configuration and an
# optional statistics sink.
SessionFactory = Callable[[DavConfig, TransportStats | None], DavSession]


def _raise_for_response(operation: str, url: str, resp: DavResponse) -> None:
    """Raise the exception matching a failed response."""
    if resp.failed:
        raise DavTransportError(operation, redact_url(url), resp.error or "")

    raise make_http_error(operation, redact_url(url), resp.status, resp.reason)


class DavDirectoryTreeBuilder:
    """Create a directory and all its missing ancestors.

    Parameters
    ----------
    client : `DavClient`
        Client to send MKCOL requests with.
    """

    def __init__(self, client: DavClient) -> None:
        self._client = client

    def create_recursive(self, url: str) -> None:
        """Create the directory at `url` one path segment at a time,
        starting from the top.

        A directory which already exists is not an error. Failures other
        than lack of storage space are ignored, since the server may
        normalize paths differently than we do: the operation which needs
        the directory reports the authoritative error.

        Raises
        ------
        StorageExhaustedError
            If the server has no space left. No deeper directory is
            attempted.
        """
        parsed = parse_dav_url(url)
        path = ""
        for segment in split_segments(parsed.path):
            path += "/" + segment
            target = f"{parsed.scheme}://{parsed.host}{path}/"
            resp = self._client.mkcol(target)
            if resp.failed:
                log.debug("ignoring failure to create directory %s: %s", redact_url(target), resp.error)
                continue

            if resp.status in SUCCESS_STATUSES["MKCOL"] or resp.status == HTTPStatus.METHOD_NOT_ALLOWED:
                continue

            if resp.status == HTTPStatus.INSUFFICIENT_STORAGE:
                raise make_http_error("MKCOL", redact_url(parsed.origin + path), resp.status, resp.reason)

            log.debug("ignoring failure to create directory %s: status %d", redact_url(target), resp.status)


class DavFileSystem:
    """Access the files of webDAV servers as a file system.

    Parameters
    ----------
    config_pool : `DavConfigPool`, optional
        Configurations of the endpoints. If not provided, the configuration
        is the process-wide `DavConfigPool`, loaded from the file named by
        the environment variable ``WEBDAVFS_CONFIG`` when the pool is first
        created. All file systems share that pool.
    credentials : `CredentialProvider`, optional
        Provider of the Basic credentials to use for a URL. If not provided,
        the user name and password of the endpoint configuration are used.
    stats : `TransportStats`, optional
        Sink to record the requests sent and the bytes exchanged into.
    session_factory : `~collections.abc.Callable`, optional
        Callable building a `DavSession` from a `DavConfig` and `stats`.
    sleep : `~collections.abc.Callable`, optional
        Function called to wait between retries.

    Notes
    -----
    Accepted URLs are of the form 'webdav://host/path' (HTTP),
    'webdavs://host/path' (HTTPS), 'storagebox://user/path' (a storage
    box, over HTTPS) and 'https://user.your-storagebox.de/path'.

    Each open handle owns its own session. Handles must not be used from
    several threads at once.
    """

    def __init__(
        self,
        config_pool: DavConfigPool | None = None,
        credentials: CredentialProvider | None = None,
        stats: TransportStats | None = None,
        session_factory: SessionFactory | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config_pool = config_pool if config_pool is not None else DavConfigPool(CONFIG_ENV_VAR)
        self._credentials: CredentialProvider = (
            credentials if credentials is not None else ConfigCredentialProvider(self._config_pool)
        )
        self._stats = stats
        self._session_factory: SessionFactory = session_factory if session_factory is not None else DavSession
        self._sleep = sleep

    @property
    def stats(self) -> TransportStats | None:
        return self._stats

    def can_handle(self, url: str) -> bool:
        """Return True if `url` designates a resource on a webDAV server."""
        return is_webdav_url(url)

    def _make_client(self, url: str) -> tuple[ParsedDavUrl, DavClient, DavConfig]:
        parsed = parse_dav_url(url)
        config = self._config_pool.get_config_for_url(url)
        session = self._session_factory(config, self._stats)
        client = DavClient(
            session,
            credentials=self._credentials(url),
            policy=RetryPolicy(max_attempts=config.retries),
            sleep=self._sleep,
        )
        return parsed, client, config

    @contextlib.contextmanager
    def _client(self, url: str) -> Iterator[tuple[ParsedDavUrl, DavClient]]:
        """Yield a client for a single operation on `url` and close its
        session afterwards.
        """
        parsed, client, _ = self._make_client(url)
        try:
            yield parsed, client
        finally:
            client.session.close()

    def open(
        self, url: str, mode: str = "rb", encoding: str | None = None, newline: str | None = None
    ) -> IO[Any]:
        """Open the file at `url`.

        Parameters
        ----------
        url : `str`
            URL of the file.
        mode : `str`
            One of 'r', 'rb', 'w' or 'wb'. Files can not be opened for
            appending nor for both reading and writing.
        encoding : `str`, optional
            Encoding of text files.
        newline : `str`, optional
            Newline handling of text files, as in `io.TextIOWrapper`.

        Returns
        -------
        handle : `DavReadResourceHandle` or `DavWriteResourceHandle` or \
                `io.TextIOWrapper`
            Handle on the file. Data written is uploaded when the handle is
            synced or closed.

        Raises
        ------
        io.UnsupportedOperation
            If `mode` requests appending or updating.
        ValueError
            If `mode` is invalid.
        DavNotFoundError
            If the file to read does not exist.
        """
        if "a" in mode or "+" in mode or "x" in mode:
            raise io.UnsupportedOperation(f"mode {mode!r} is not supported for webDAV files")

        if set(mode) - set("rwbt") or len(mode) != len(set(mode)) or ("r" in mode) == ("w" in mode):
            raise ValueError(f"invalid mode: {mode!r}")

        parsed, client, config = self._make_client(url)
        handle: BaseResourceHandle
        try:
            if "r" in mode:
                size = self._file_size(client, url, parsed)
                handle = DavReadResourceHandle(
                    "rb", log, url, client, file_size=size, block_size=config.block_size
                )
            else:
                handle = DavWriteResourceHandle(
                    "wb",
                    log,
                    url,
                    client,
                    create_parents=self.create_directory_recursive,
                    spill_threshold=config.streaming_threshold,
                    tmpdir=config.tmpdir,
                )
        except BaseException:
            client.session.close()
            raise

        if "b" in mode:
            return handle

        return io.TextIOWrapper(
            handle,  # type: ignore[arg-type]
            encoding="locale" if encoding is None else encoding,
            newline=newline,
        )

    @staticmethod
    def _binary(handle: IO[Any]) -> Any:
        return handle.buffer if isinstance(handle, io.TextIOWrapper) else handle

    def read(self, handle: IO[Any], length: int, offset: int) -> bytes:
        """Read up to `length` bytes at `offset` from a handle open for
        reading.
        """
        return self._binary(handle).read_at(length, offset)

    def write(self, handle: IO[Any], data: bytes, offset: int) -> int:
        """Write `data` at `offset` to a handle open for writing.

        Raises
        ------
        NonSequentialWriteError
            If `offset` is not the end of the data already written.
        """
        return self._binary(handle).write_at(data, offset)

    def sync(self, handle: IO[Any]) -> None:
        """Upload the data written to `handle` so far."""
        if isinstance(handle, io.TextIOWrapper):
            handle.flush()

        binary = self._binary(handle)
        if isinstance(binary, DavWriteResourceHandle):
            binary.sync()

    def close(self, handle: IO[Any]) -> None:
        """Close `handle`, uploading the data written to it if any."""
        handle.close()

    def _file_size(self, client: DavClient, url: str, parsed: ParsedDavUrl) -> int:
        resp = client.head(parsed.http_url)
        if resp.failed or resp.status not in _HEAD_SUCCESS_STATUSES:
            _raise_for_response("HEAD", url, resp)

        if (content_length := resp.headers.get("Content-Length")) is not None:
            return int(content_length)

        # Some servers do not report the size in HEAD responses.
        resp = client.propfind(parsed.http_url, depth=0)
        if resp.failed or resp.status not in SUCCESS_STATUSES["PROPFIND"]:
            _raise_for_response("PROPFIND", url, resp)

        if (match := _CONTENT_LENGTH_PATTERN.search(resp.text())) is None:
            raise DavProtocolError(
                "PROPFIND", redact_url(url), resp.status, f"Size of {redact_url(url)} unknown"
            )

        return int(match.group(1))

    def file_size(self, url: str) -> int:
        """Return the size in bytes of the file at `url`."""
        with self._client(url) as (parsed, client):
            return self._file_size(client, url, parsed)

    def exists(self, url: str) -> bool:
        """Return True if a file (not a directory) exists at `url`.

        Any failure to obtain the information is reported as False.
        """
        with self._client(url) as (parsed, client):
            resp = client.head(parsed.http_url)
            if resp.failed or resp.status not in _HEAD_SUCCESS_STATUSES:
                return False

            return not self._is_dir(client, parsed)

    def _is_dir(self, client: DavClient, parsed: ParsedDavUrl) -> bool:
        url = parsed.http_url if parsed.http_url.endswith("/") else parsed.http_url + "/"
        resp = client.propfind(url, depth=0)
        if resp.failed or resp.status not in SUCCESS_STATUSES["PROPFIND"]:
            return False

        hrefs = extract_hrefs(resp.body)
        return bool(hrefs) and hrefs[0].endswith("/")

    def is_dir(self, url: str) -> bool:
        """Return True if a directory exists at `url`."""
        with self._client(url) as (parsed, client):
            return self._is_dir(client, parsed)

    def create_directory(self, url: str) -> None:
        """Create the directory at `url`.

        If the directory already exists, this is not an error. If its parent
        does not exist, the missing ancestors are created first.

        Raises
        ------
        StorageExhaustedError
            If the server has no space left.
        DavProtocolError
            If the directory could not be created.
        """
        with self._client(url) as (parsed, client):
            resp = client.mkcol(parsed.http_url)
            if not resp.failed and resp.status in (HTTPStatus.NOT_FOUND, HTTPStatus.CONFLICT):
                log.debug("parent of %s does not exist, creating it", redact_url(url))
                parent = url.rstrip("/").rsplit("/", 1)[0]
                DavDirectoryTreeBuilder(client).create_recursive(parent)
                resp = client.mkcol(parsed.http_url)

            if resp.failed:
                _raise_for_response("MKCOL", url, resp)

            if resp.status == HTTPStatus.METHOD_NOT_ALLOWED:
                log.debug("directory %s already exists", redact_url(url))
                return

            if resp.status not in SUCCESS_STATUSES["MKCOL"]:
                _raise_for_response("MKCOL", url, resp)

    def create_directory_recursive(self, url: str) -> None:
        """Create the directory at `url` and all its missing ancestors.

        Raises
        ------
        StorageExhaustedError
            If the server has no space left.
        """
        with self._client(url) as (_, client):
            DavDirectoryTreeBuilder(client).create_recursive(url)

    def remove_file(self, url: str) -> None:
        """Remove the file at `url`.

        Raises
        ------
        DavNotFoundError
            If no file exists at `url`.
        """
        with self._client(url) as (parsed, client):
            resp = client.delete(parsed.http_url)
            if resp.failed or resp.status not in SUCCESS_STATUSES["DELETE"]:
                _raise_for_response("DELETE", url, resp)

    def remove_directory(self, url: str) -> None:
        """Remove the directory at `url` and, depending on the server, its
        contents.
        """
        with self._client(url) as (parsed, client):
            target = parsed.http_url if parsed.http_url.endswith("/") else parsed.http_url + "/"
            resp = client.delete(target)
            if resp.failed or resp.status not in SUCCESS_STATUSES["DELETE"]:
                _raise_for_response("DELETE", url, resp)

    def move_file(self, source: str, destination: str) -> None:
        """Move the file at `source` to `destination`, replacing any file
        already at `destination`.

        Both URLs must designate resources on the same server.
        """
        destination_url = parse_dav_url(destination).http_url
        with self._client(source) as (parsed, client):
            resp = client.move(parsed.http_url, destination_url, overwrite=True)
            if resp.failed or resp.status not in SUCCESS_STATUSES["MOVE"]:
                _raise_for_response("MOVE", source, resp)

    def set_property(self, url: str, name: str, value: str) -> None:
        """Set the custom property `name` of the resource at `url`."""
        with self._client(url) as (parsed, client):
            resp = client.proppatch(parsed.http_url, name, value)
            if resp.failed or resp.status not in SUCCESS_STATUSES["PROPPATCH"]:
                _raise_for_response("PROPPATCH", url, resp)

    def glob(self, pattern: str) -> list[str]:
        """Return the URLs of the files matching `pattern`.

        See `DavGlobber.glob` for the supported wildcards.
        """
        with self._client(pattern) as (_, client):
            return DavGlobber(client).glob(pattern)

    def list_files(self, directory: str, callback: Callable[[str, bool], None]) -> bool:
        """Call `callback` for every file found below `directory`,
        recursively.

        Parameters
        ----------
        directory : `str`
            URL of the directory to list.
        callback : `~collections.abc.Callable`
            Called with the URL of each file and False, since only files are
            reported.

        Returns
        -------
        found : `bool`
            True if at least one file was found.
        """
        matches = self.glob(directory.rstrip("/") + "/**")
        for match in matches:
            callback(match, False)

        return bool(matches)
