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

__all__ = ("PROPERTY_NAMESPACE", "SUCCESS_STATUSES", "DavClient", "extract_hrefs")

import logging
import re
import time
from collections.abc import Callable, Mapping
from http import HTTPStatus
from urllib.parse import unquote, urlsplit
from xml.sax.saxutils import escape

from urllib3.util import make_headers

from ._retry import RetryingExecutor, RetryPolicy
from ._transport import DavRequest, DavResponse, DavSession
from ._upload import UploadSource
from .davutils import DavCredentials

log = logging.getLogger(__name__)

# Namespace of the custom properties set via PROPPATCH.
PROPERTY_NAMESPACE = "http://webdavfs.org/ns/"

# Only the tag pairs <href>...</href> and <D:href>...</D:href> are
# recognized. Servers using another prefix for the "DAV:" namespace are not
# supported.
_HREF_PATTERN = re.compile(r"<(?P<prefix>[Dd]:)?href>(?P<value>.*?)</(?P=prefix)?href>", re.DOTALL)

# Name of a custom property: a valid XML element name without prefix.
_PROPERTY_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9._-]*$")

_PROPFIND_BODY = (
    """<?xml version="1.0" encoding="utf-8"?>"""
    """<D:propfind xmlns:D="DAV:"><D:prop>"""
    """<D:resourcetype/><D:getcontentlength/><D:getlastmodified/>"""
    """</D:prop></D:propfind>"""
)

_XML_CONTENT_TYPE = "application/xml; charset=utf-8"


def extract_hrefs(body: bytes | str) -> list[str]:
    """Return the values of the ``href`` elements found in the body of a
    PROPFIND response.

    Values are percent-decoded. Absolute URLs are reduced to their path so
    that every returned value is a path starting by '/'.

    Parameters
    ----------
    body : `bytes` or `str`
        Body of the response.

    Notes
    -----
    This is a deliberately narrow scanner, not an XML parser: elements
    qualified with a namespace prefix other than 'D' are ignored.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")

    hrefs: list[str] = []
    for match in _HREF_PATTERN.finditer(body):
        value = match.group("value").strip()
        if not value:
            continue

        if "://" in value:
            value = urlsplit(value).path or "/"

        value = unquote(value.replace("&amp;", "&"))
        hrefs.append(value)

    return hrefs


class DavClient:
    """Issue webDAV requests against a single endpoint.

    Each request is authenticated with the Basic credentials this client
    was created with, if any, and sent through a `RetryingExecutor`.

    Parameters
    ----------
    session : `DavSession`
        Session to send the requests with.
    credentials : `DavCredentials`, optional
        User name and password for Basic authentication.
    policy : `RetryPolicy`, optional
        Retry policy.
    sleep : `~collections.abc.Callable`, optional
        Function called to wait between retries.

    Notes
    -----
    All the URLs this client accepts are HTTP URLs, i.e. URLs already
    resolved by `parse_dav_url`. Methods return the response as received:
    interpreting the status code is the responsibility of the caller.
    """

    def __init__(
        self,
        session: DavSession,
        credentials: DavCredentials | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session: DavSession = session
        self._credentials: DavCredentials | None = credentials
        self._executor = RetryingExecutor(session, policy=policy, sleep=sleep)

    @property
    def session(self) -> DavSession:
        return self._session

    def _request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | str | None = None,
        source: UploadSource | None = None,
    ) -> DavResponse:
        """Send a request with an explicit method and return the response."""
        headers = {} if headers is None else dict(headers)
        if self._credentials is not None:
            auth = make_headers(basic_auth=f"{self._credentials.username}:{self._credentials.password}")
            headers["Authorization"] = auth["authorization"]

        request = DavRequest(method, url, headers=headers)
        if isinstance(body, str):
            body = body.encode("utf-8")

        if body is not None:
            request.set_body(body)
        elif source is not None:
            request.set_upload_source(source)

        return self._executor.execute(request)

    def head(self, url: str, headers: Mapping[str, str] | None = None) -> DavResponse:
        return self._request("HEAD", url, headers=headers)

    def get(self, url: str, headers: Mapping[str, str] | None = None) -> DavResponse:
        return self._request("GET", url, headers=headers)

    def get_range(self, url: str, start: int, end: int) -> DavResponse:
        """Send a GET request for bytes `start` to `end` (both included) of
        the resource at `url`.

        The server may ignore the range and respond with status 200 and the
        entire contents of the resource.
        """
        headers = {"Range": f"bytes={start}-{end}", "Accept-Encoding": "identity"}
        return self._request("GET", url, headers=headers)

    def put(
        self,
        url: str,
        data: bytes | None = None,
        source: UploadSource | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> DavResponse:
        """Send a PUT request.

        Parameters
        ----------
        url : `str`
            Target URL.
        data : `bytes`, optional
            Request body.
        source : `UploadSource`, optional
            Source to stream the request body from, if `data` is None.
        headers : `dict` [`str`, `str`], optional
            Additional request headers.

        Notes
        -----
        If neither `data` nor `source` are provided, the body is taken from
        the upload source attached to the session, if any.
        """
        return self._request("PUT", url, headers=headers, body=data, source=source)

    def delete(self, url: str) -> DavResponse:
        return self._request("DELETE", url)

    def propfind(self, url: str, depth: int = 1) -> DavResponse:
        """Send a PROPFIND request for the resource type, size and last
        modification time of `url` and, if `depth` is 1, of its members.

        Servers respond with status 207 (Multi-Status) or, for some of
        them, 200.
        """
        headers = {"Depth": str(depth), "Content-Type": _XML_CONTENT_TYPE}
        return self._request("PROPFIND", url, headers=headers, body=_PROPFIND_BODY)

    def proppatch(self, url: str, name: str, value: str) -> DavResponse:
        """Set the custom property `name` of the resource at `url` to
        `value`.

        Raises
        ------
        ValueError
            If `name` is not a valid XML element name.
        """
        if not _PROPERTY_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid property name {name!r}")

        body = (
            """<?xml version="1.0" encoding="utf-8"?>"""
            f"""<D:propertyupdate xmlns:D="DAV:" xmlns:C="{PROPERTY_NAMESPACE}">"""
            f"""<D:set><D:prop><C:{name}>{escape(value)}</C:{name}></D:prop></D:set>"""
            """</D:propertyupdate>"""
        )
        return self._request("PROPPATCH", url, headers={"Content-Type": _XML_CONTENT_TYPE}, body=body)

    def mkcol(self, url: str) -> DavResponse:
        """Send a MKCOL request to create a collection at `url`.

        A status 405 (Method Not Allowed) means the collection already
        exists.
        """
        if not url.endswith("/"):
            url += "/"
        return self._request("MKCOL", url)

    def move(self, source_url: str, destination_url: str, overwrite: bool = True) -> DavResponse:
        """Send a MOVE request.

        A status 201 (Created) or 204 (No Content) means the resource was
        moved.
        """
        headers = {"Destination": destination_url, "Overwrite": "T" if overwrite else "F"}
        return self._request("MOVE", source_url, headers=headers)


# Statuses meaning success, by request method.
SUCCESS_STATUSES: dict[str, frozenset[int]] = {
    "PUT": frozenset({HTTPStatus.OK, HTTPStatus.CREATED, HTTPStatus.NO_CONTENT}),
    "MKCOL": frozenset({HTTPStatus.OK, HTTPStatus.CREATED, HTTPStatus.NO_CONTENT}),
    "MOVE": frozenset({HTTPStatus.CREATED, HTTPStatus.NO_CONTENT}),
    "DELETE": frozenset({HTTPStatus.OK, HTTPStatus.ACCEPTED, HTTPStatus.NO_CONTENT}),
    "PROPFIND": frozenset({HTTPStatus.MULTI_STATUS, HTTPStatus.OK}),
    "PROPPATCH": frozenset({HTTPStatus.MULTI_STATUS, HTTPStatus.OK}),
}
