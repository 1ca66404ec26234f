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

__all__ = (
    "DavRequest",
    "DavResponse",
    "DavSession",
    "HopHeaders",
    "SupportsFileUpload",
    "TransportErrorKind",
    "TransportRuntime",
    "TransportStats",
    "classify_transport_error",
)

import enum
import http.client
import logging
import os
import socket
import ssl
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable
from urllib.parse import quote, urlencode, urljoin

from astropy import units as u
from urllib3 import HTTPHeaderDict, PoolManager, ProxyManager
from urllib3.connection import HTTPConnection
from urllib3.exceptions import (
    ConnectTimeoutError,
    HTTPError,
    NameResolutionError,
    NewConnectionError,
    ProtocolError,
    ProxyError,
    ReadTimeoutError,
    SSLError,
)
from urllib3.exceptions import IncompleteRead as Urllib3IncompleteRead
from urllib3.response import BaseHTTPResponse
from urllib3.util import Timeout, make_headers
from urllib3.util.ssl_ import create_urllib3_context

from lsst.utils.timer import time_this

from ._upload import BufferUploadSource, UploadSource
from .davutils import DavConfig, TokenAuthorizer, dump_response, redact_url

log = logging.getLogger(__name__)

# Uploads larger than this size (in bytes) are sent without the
# "Expect: 100-continue" handshake and with an extended read timeout.
LARGE_UPLOAD_SIZE: int = 10 * 1_048_576

# Read timeout in seconds for large uploads.
LARGE_UPLOAD_TIMEOUT: float = 600.0

# Maximum number of redirections followed for a single request.
MAX_REDIRECTS: int = 10

REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308})


class TransportErrorKind(enum.Enum):
    """Kind of network-level failure of a request."""

    CONNECT = "connection refused or failed"
    RESOLVE_HOST = "could not resolve host"
    RESOLVE_PROXY = "could not resolve or connect to proxy"
    TIMEOUT = "operation timed out"
    SEND = "failure sending data"
    RECEIVE = "failure receiving data"
    PARTIAL = "truncated response"
    EMPTY_REPLY = "empty reply from server"
    TLS = "TLS failure"
    TOO_MANY_REDIRECTS = "too many redirections"
    OTHER = "transport failure"

    @property
    def retryable(self) -> bool:
        return self not in (
            TransportErrorKind.TLS,
            TransportErrorKind.TOO_MANY_REDIRECTS,
            TransportErrorKind.OTHER,
        )


def classify_transport_error(error: BaseException) -> TransportErrorKind:
    """Return the kind of transport failure `error` represents.

    Parameters
    ----------
    error : `BaseException`
        Exception raised by `urllib3` (or the socket layer) while sending
        a request or receiving its response.
    """
    match error:
        case ProxyError():
            return TransportErrorKind.RESOLVE_PROXY
        case NameResolutionError():
            return TransportErrorKind.RESOLVE_HOST
        case NewConnectionError():
            return TransportErrorKind.CONNECT
        case ConnectTimeoutError() | ReadTimeoutError() | TimeoutError() | socket.timeout():
            return TransportErrorKind.TIMEOUT
        case SSLError() | ssl.SSLError():
            return TransportErrorKind.TLS
        case Urllib3IncompleteRead() | http.client.IncompleteRead():
            return TransportErrorKind.PARTIAL
        case ProtocolError():
            # urllib3 wraps the underlying error as the second argument.
            cause = error.args[1] if len(error.args) > 1 else None
            match cause:
                case http.client.RemoteDisconnected():
                    return TransportErrorKind.EMPTY_REPLY
                case Urllib3IncompleteRead() | http.client.IncompleteRead():
                    return TransportErrorKind.PARTIAL
                case BrokenPipeError():
                    return TransportErrorKind.SEND
                case _:
                    return TransportErrorKind.RECEIVE
        case BrokenPipeError():
            return TransportErrorKind.SEND
        case ConnectionRefusedError():
            return TransportErrorKind.CONNECT
        case ConnectionError():
            return TransportErrorKind.RECEIVE
        case _:
            return TransportErrorKind.OTHER


@dataclass
class HopHeaders:
    """Status line and headers of one response in a redirection chain."""

    status: int
    reason: str
    headers: HTTPHeaderDict
    version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        return f"{self.version} {self.status} {self.reason}".rstrip()


class DavRequest:
    """HTTP request to send via a `DavSession`.

    Parameters
    ----------
    method : `str`
        HTTP method, e.g. 'GET' or 'PROPFIND'.
    url : `str`
        Target URL, without query.
    headers : `dict` [`str`, `str`], optional
        Request headers.
    params : `dict` [`str`, `str`], optional
        Query parameters. They are percent-encoded and appended to `url`.
    body : `bytes`, optional
        Request body.

    Notes
    -----
    A request has at most one body source: attaching an upload source
    discards any body previously set and vice versa.
    """

    def __init__(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> None:
        self.method: str = method.upper()
        self.url: str = url
        self.headers: dict[str, str] = {} if headers is None else dict(headers)
        self.params: dict[str, str] = {} if params is None else dict(params)
        self._body: bytes | None = None
        self._source: UploadSource | None = None
        if body is not None:
            self.set_body(body)

    @property
    def body(self) -> bytes | None:
        return self._body

    @property
    def source(self) -> UploadSource | None:
        return self._source

    def set_body(self, body: bytes) -> None:
        self._body = bytes(body)
        self._source = None

    def set_upload_source(self, source: UploadSource) -> None:
        self._source = source
        self._body = None

    @property
    def full_url(self) -> str:
        if not self.params:
            return self.url

        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode(self.params, quote_via=quote)}"


@dataclass
class DavResponse:
    """Outcome of sending a `DavRequest`.

    If the request failed at the network level, `error` describes the
    failure, `status` is 0 and `body` is empty.
    """

    url: str = ""
    status: int = 0
    reason: str = ""
    hops: list[HopHeaders] = field(default_factory=list)
    body: bytes = b""
    error: str | None = None
    error_kind: TransportErrorKind | None = None

    @property
    def headers(self) -> HTTPHeaderDict:
        """Headers of the last response in the redirection chain."""
        return self.hops[-1].headers if self.hops else HTTPHeaderDict()

    @property
    def failed(self) -> bool:
        """True if the request failed at the network level."""
        return self.error is not None

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class TransportStats:
    """Counters of the requests sent and the bytes exchanged.

    Instances of this class are thread-safe and can be shared by several
    sessions.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[str, int] = {}
        self._bytes_sent: int = 0
        self._bytes_received: int = 0

    def record(self, method: str, bytes_sent: int, bytes_received: int) -> None:
        with self._lock:
            self._calls[method] = self._calls.get(method, 0) + 1
            self._bytes_sent += bytes_sent
            self._bytes_received += bytes_received

    def calls(self, method: str) -> int:
        with self._lock:
            return self._calls.get(method, 0)

    @property
    def total_calls(self) -> int:
        with self._lock:
            return sum(self._calls.values())

    @property
    def bytes_sent(self) -> int:
        with self._lock:
            return self._bytes_sent

    @property
    def bytes_received(self) -> int:
        with self._lock:
            return self._bytes_received


class TransportRuntime:
    """Process-wide state shared by all transport sessions.

    Each session acquires the runtime when created and releases it when
    closed. The shared TLS contexts built by the runtime are kept for the
    lifetime of the process: releasing the last reference does not discard
    them.

    There is only a single instance of this class. It is thread-safe.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls) -> TransportRuntime:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._refcount = 0
                    instance._ssl_contexts = {}
                    cls._instance = instance

        return cls._instance

    _refcount: int
    _ssl_contexts: dict[tuple[bool, str | None], ssl.SSLContext]

    @property
    def refcount(self) -> int:
        return self._refcount

    def acquire(self) -> None:
        with TransportRuntime._lock:
            if self._refcount == 0:
                log.debug("initializing transport runtime")
            self._refcount += 1

    def release(self) -> None:
        with TransportRuntime._lock:
            self._refcount = max(0, self._refcount - 1)

    def ssl_context(self, verify: bool, trusted_authorities: str | None = None) -> ssl.SSLContext:
        """Return the TLS context to use for the given verification
        settings.

        Parameters
        ----------
        verify : `bool`
            If True, the server certificate and host name are verified.
        trusted_authorities : `str`, optional
            Path to a certificate bundle file or to a directory of
            certificates of the trusted authorities. If None, the
            certificates trusted by the system are used.

        Raises
        ------
        FileNotFoundError
            If `trusted_authorities` is neither a file nor a directory.
        """
        key = (verify, trusted_authorities)
        with TransportRuntime._lock:
            if (context := self._ssl_contexts.get(key)) is not None:
                return context

            context = create_urllib3_context(cert_reqs=ssl.CERT_REQUIRED if verify else ssl.CERT_NONE)
            if trusted_authorities is None:
                context.load_default_certs()
            elif os.path.isdir(trusted_authorities):
                context.load_verify_locations(capath=trusted_authorities)
            elif os.path.isfile(trusted_authorities):
                context.load_verify_locations(cafile=trusted_authorities)
            else:
                raise FileNotFoundError(
                    f"Trusted authorities file or directory {trusted_authorities} does not exist"
                )

            self._ssl_contexts[key] = context
            return context

    def _destroy(self) -> None:
        """Destroy this class singleton instance.

        Helper method to be used in tests to reset global state.
        """
        with TransportRuntime._lock:
            TransportRuntime._instance = None


@runtime_checkable
class SupportsFileUpload(Protocol):
    """Capability of a session to stream the body of the next PUT requests
    from an upload source.
    """

    def attach_upload_source(self, source: UploadSource) -> None: ...

    def detach_upload_source(self) -> None: ...


class DavSession:
    """Reusable connection configuration for sending HTTP requests to a
    single webDAV endpoint.

    Parameters
    ----------
    config : `DavConfig`
        Configuration of the endpoint.
    stats : `TransportStats`, optional
        Sink to record the requests sent by this session into.
    pool_manager : `urllib3.PoolManager`, optional
        Pool manager to send requests with. If not provided, one is built
        from `config`.

    Notes
    -----
    Sessions are not meant to be used concurrently from several threads.
    `urllib3` retries and redirections are disabled: retries are the
    responsibility of `RetryingExecutor` and redirections are followed by
    the session itself, so that the status line and headers of every hop
    are captured.
    """

    def __init__(
        self,
        config: DavConfig,
        stats: TransportStats | None = None,
        pool_manager: PoolManager | None = None,
    ) -> None:
        self._config: DavConfig = config
        self._stats: TransportStats | None = stats
        self._runtime = TransportRuntime()
        self._closed: bool = False
        self._upload_source: UploadSource | None = None

        # If a token was specified for this endpoint, use it for
        # authenticating requests sent over secure HTTP.
        self._authorizer: TokenAuthorizer | None = None
        if self._config.token is not None:
            self._authorizer = TokenAuthorizer(self._config.token)

        self._timeout = Timeout(connect=self._config.timeout, read=self._config.timeout)

        # Headers sent with every request. Accept all the content encodings
        # urllib3 can decode.
        self._base_headers: dict[str, str] = make_headers(accept_encoding=True)
        if not self._config.keep_alive:
            self._base_headers["Connection"] = "close"

        self._pool_manager = pool_manager if pool_manager is not None else self._make_pool_manager()
        self._runtime.acquire()

    @property
    def config(self) -> DavConfig:
        return self._config

    def _make_pool_manager(self) -> PoolManager:
        """Build the pool manager according to this session's
        configuration.
        """
        socket_options = list(HTTPConnection.default_socket_options)
        if self._config.keep_alive:
            socket_options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
            if hasattr(socket, "TCP_KEEPIDLE"):
                socket_options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 60))

        kwargs = {
            "num_pools": 10,
            "maxsize": 1,
            "timeout": self._timeout,
            "retries": False,
            "socket_options": socket_options,
            "ssl_context": self._runtime.ssl_context(self._config.verify, self._config.trusted_authorities),
            "cert_reqs": "CERT_REQUIRED" if self._config.verify else "CERT_NONE",
        }
        if not self._config.verify:
            kwargs["assert_hostname"] = False

        if self._config.proxy_host is None:
            return PoolManager(**kwargs)

        proxy_headers = None
        if self._config.proxy_username is not None:
            proxy_headers = make_headers(
                proxy_basic_auth=f"{self._config.proxy_username}:{self._config.proxy_password or ''}"
            )

        proxy_url = self._config.proxy_host
        if "://" not in proxy_url:
            proxy_url = f"http://{proxy_url}:{self._config.proxy_port}"

        return ProxyManager(proxy_url, proxy_headers=proxy_headers, **kwargs)

    def attach_upload_source(self, source: UploadSource) -> None:
        """Use `source` as the body of subsequent PUT requests which have
        no body of their own.
        """
        self._upload_source = source

    def detach_upload_source(self) -> None:
        self._upload_source = None

    def get(
        self, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None
    ) -> DavResponse:
        return self.execute(DavRequest("GET", url, headers=headers, params=params))

    def head(
        self, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None
    ) -> DavResponse:
        return self.execute(DavRequest("HEAD", url, headers=headers, params=params))

    def put(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        params: Mapping[str, str] | None = None,
    ) -> DavResponse:
        return self.execute(DavRequest("PUT", url, headers=headers, params=params, body=body))

    def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        params: Mapping[str, str] | None = None,
    ) -> DavResponse:
        """Send a request with an arbitrary method, e.g. 'POST' or
        'PROPFIND'.
        """
        return self.execute(DavRequest(method, url, headers=headers, params=params, body=body))

    def execute(self, request: DavRequest) -> DavResponse:
        """Send `request` and return the response.

        Network-level failures are not raised: they are reported via the
        `error` and `error_kind` fields of the returned response.

        Parameters
        ----------
        request : `DavRequest`
            Request to send.

        Returns
        -------
        response : `DavResponse`
            Response of the last hop of the redirection chain.
        """
        if self._closed:
            raise ValueError("I/O operation on closed session")

        url = request.full_url
        headers = dict(self._base_headers)
        headers.update(request.headers)

        # Ensure we only send the token over secure HTTP to avoid leaking it.
        if self._authorizer is not None and url.startswith("https://"):
            self._authorizer.set_authorization(headers)

        source: UploadSource | None = request.source
        if source is None and request.body is not None:
            source = BufferUploadSource(request.body)
        elif source is None and request.method == "PUT":
            source = self._upload_source

        timeout = self._timeout
        if source is not None:
            headers["Content-Length"] = str(source.size)
            if source.size > LARGE_UPLOAD_SIZE:
                for key in [key for key in headers if key.lower() == "expect"]:
                    del headers[key]
                timeout = Timeout(connect=self._config.timeout, read=LARGE_UPLOAD_TIMEOUT)

        response = DavResponse(url=url)
        if self._config.debug:
            log.debug("sending request %s %s", request.method, redact_url(url))
            for header, value in headers.items():
                log.debug("   %s: %s", header, "[...]" if header.lower() == "authorization" else value)

        bytes_sent = 0
        try:
            with time_this(
                log,
                msg="%s %s",
                args=(
                    request.method,
                    redact_url(url),
                ),
                mem_usage=self._config.collect_memory_usage,
                mem_unit=u.mebibyte,
            ):
                bytes_sent = self._send(request.method, url, headers, source, timeout, response)
        except (HTTPError, OSError) as e:
            kind = classify_transport_error(e)
            response.error = response.hops[-1].status_line if response.hops else f"{kind.value}: {e}"
            response.error_kind = kind
            response.status = 0
            response.body = b""
            log.debug(
                "request %s %s failed: %s [%s]", request.method, redact_url(url), response.error, kind.name
            )

        if self._stats is not None:
            self._stats.record(request.method, bytes_sent, len(response.body))

        if self._config.debug:
            dump_response(request.method, response, dump_body=True)

        return response

    def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        source: UploadSource | None,
        timeout: Timeout,
        response: DavResponse,
    ) -> int:
        """Send a request, following redirections, and fill `response`.

        Returns the number of body bytes sent.
        """
        bytes_sent = 0
        for _ in range(MAX_REDIRECTS + 1):
            if source is not None:
                source.rewind()

            resp: BaseHTTPResponse = self._pool_manager.urlopen(
                method,
                url,
                body=source,
                headers=headers,
                redirect=False,
                retries=False,
                preload_content=False,
                decode_content=True,
                timeout=timeout,
            )
            if source is not None:
                bytes_sent += source.tell()

            response.hops.append(
                HopHeaders(
                    status=resp.status,
                    reason=resp.reason or "",
                    headers=HTTPHeaderDict(resp.headers),
                    version="HTTP/1.0" if resp.version == 10 else "HTTP/1.1",
                )
            )

            location = resp.get_redirect_location()
            if resp.status in REDIRECT_STATUSES and location:
                resp.drain_conn()
                resp.release_conn()
                url = urljoin(url, location)
                log.debug("following redirection to %s", redact_url(url))
                if resp.status == 303 and method != "HEAD":
                    method, source = "GET", None
                    headers = {
                        key: value
                        for key, value in headers.items()
                        if key.lower() not in ("content-length", "content-type")
                    }
                continue

            try:
                response.body = resp.read()
            finally:
                resp.release_conn()

            response.url = url
            response.status = resp.status
            response.reason = resp.reason or ""
            return bytes_sent

        response.url = url
        response.status = 0
        response.error = f"maximum of {MAX_REDIRECTS} redirections exceeded"
        response.error_kind = TransportErrorKind.TOO_MANY_REDIRECTS
        return bytes_sent

    def close(self) -> None:
        """Close the network connections of this session."""
        if self._closed:
            return

        self._closed = True
        self._upload_source = None
        self._pool_manager.clear()
        self._runtime.release()

    def __enter__(self) -> DavSession:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
