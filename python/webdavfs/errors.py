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
    "DavAuthenticationError",
    "DavConflictError",
    "DavForbiddenError",
    "DavMethodNotAllowedError",
    "DavNotFoundError",
    "DavProtocolError",
    "DavTransportError",
    "InvalidURLError",
    "NonSequentialWriteError",
    "StorageExhaustedError",
    "make_http_error",
)

from http import HTTPStatus


class InvalidURLError(ValueError):
    """Raised when a URL does not use one of the accepted schemes."""


class NonSequentialWriteError(OSError):
    """Raised when a write does not start at the current end of the data
    already written to a handle.

    Parameters
    ----------
    path : `str`
        URL of the resource being written.
    expected : `int`
        Offset the next write must start at.
    actual : `int`
        Offset the rejected write started at.
    """

    def __init__(self, path: str, expected: int, actual: int) -> None:
        super().__init__(
            f"""Non-sequential write to {path}: expected offset {expected} but got {actual}. """
            """WebDAV files can only be written sequentially."""
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class DavTransportError(OSError):
    """Raised when a request could not be completed at the network level,
    after all the allowed retries.

    Parameters
    ----------
    operation : `str`
        HTTP method of the failed request.
    url : `str`
        Target URL of the failed request.
    error : `str`
        Description of the transport failure.
    """

    def __init__(self, operation: str, url: str, error: str) -> None:
        super().__init__(f"{operation} {url} failed: {error}")
        self.operation = operation
        self.url = url
        self.error = error


class DavProtocolError(OSError):
    """Raised when the server responds with an unexpected HTTP status.

    Parameters
    ----------
    operation : `str`
        Operation or HTTP method that failed.
    url : `str`
        Target URL.
    status : `int`
        HTTP status code of the response.
    message : `str`
        Full error message, including remediation hints if any.
    """

    def __init__(self, operation: str, url: str, status: int, message: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.url = url
        self.status = status


class DavAuthenticationError(DavProtocolError, PermissionError):
    """HTTP 401: credentials missing or rejected."""


class DavForbiddenError(DavProtocolError, PermissionError):
    """HTTP 403: access to the resource is forbidden."""


class DavNotFoundError(DavProtocolError, FileNotFoundError):
    """HTTP 404: the resource does not exist."""


class DavMethodNotAllowedError(DavProtocolError):
    """HTTP 405: the server does not allow this method on the resource."""


class DavConflictError(DavProtocolError):
    """HTTP 409: typically the parent collection does not exist."""


class StorageExhaustedError(DavProtocolError):
    """HTTP 507: the server has no space left to store the data."""


# Error class and remediation hints to attach to errors by status code.
_ERRORS: dict[int, tuple[type[DavProtocolError], tuple[str, ...]]] = {
    HTTPStatus.UNAUTHORIZED: (
        DavAuthenticationError,
        (
            "Authentication failed. Check the username and password configured for this endpoint.",
            "Credentials are read from the 'username' and 'password' settings in the file "
            "referred to by WEBDAVFS_CONFIG.",
        ),
    ),
    HTTPStatus.FORBIDDEN: (
        DavForbiddenError,
        (
            "Access forbidden. Check if:",
            "  - WebDAV is enabled on your storage box",
            "  - Your user has permission to access this path",
            "  - The path is within your allowed scope",
        ),
    ),
    HTTPStatus.NOT_FOUND: (
        DavNotFoundError,
        (
            "File or directory not found.",
            "For write operations, the parent directory must exist. Create it with "
            "DavFileSystem.create_directory_recursive() if needed.",
        ),
    ),
    HTTPStatus.METHOD_NOT_ALLOWED: (
        DavMethodNotAllowedError,
        (
            "HTTP method not allowed by server.",
            "The server may not support this WebDAV operation.",
        ),
    ),
    HTTPStatus.CONFLICT: (
        DavConflictError,
        (
            "Conflict error - parent directory may not exist.",
            "Create parent directories first with DavFileSystem.create_directory_recursive().",
        ),
    ),
    HTTPStatus.INSUFFICIENT_STORAGE: (
        StorageExhaustedError,
        (
            "Storage quota exceeded. Your storage box is full.",
            "Free up space by deleting files or upgrade your storage plan.",
        ),
    ),
}


def make_http_error(operation: str, url: str, status: int, reason: str | None = None) -> DavProtocolError:
    """Build the exception to raise for an unexpected HTTP status.

    Parameters
    ----------
    operation : `str`
        Operation or HTTP method that failed, e.g. 'PUT' or 'MKCOL'.
    url : `str`
        Target URL. Callers are expected to have redacted it.
    status : `int`
        HTTP status code of the response.
    reason : `str`, optional
        Reason phrase. If not provided, the standard phrase for `status` is
        used.

    Returns
    -------
    error : `DavProtocolError`
        An instance of the subclass matching `status`, or of
        `DavProtocolError` itself for statuses without a specific class.
    """
    if not reason:
        try:
            reason = HTTPStatus(status).phrase
        except ValueError:
            reason = "Unknown"

    message = f"WebDAV error on '{url}' during {operation} (HTTP {status} {reason})"
    error_class, hints = _ERRORS.get(status, (DavProtocolError, ()))
    if hints:
        message = "\n".join((message, *hints))

    return error_class(operation, url, status, message)
