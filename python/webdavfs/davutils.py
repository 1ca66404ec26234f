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
    "ConfigCredentialProvider",
    "CredentialProvider",
    "DavConfig",
    "DavConfigPool",
    "DavCredentials",
    "ParsedDavUrl",
    "TokenAuthorizer",
    "dump_response",
    "expand_vars",
    "is_webdav_url",
    "normalize_path",
    "normalize_url",
    "parse_dav_url",
    "redact_url",
)

import logging
import os
import posixpath
import stat
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NamedTuple
from urllib.parse import parse_qsl, urlparse, urlunparse

import yaml

from .errors import InvalidURLError

if TYPE_CHECKING:
    from ._transport import DavResponse

# Use the same logger than `dav.py`.
log = logging.getLogger(f"""{__name__.replace(".davutils", ".dav")}""")

# Domain suffix of the hosts serving storage boxes.
STORAGEBOX_DOMAIN = "your-storagebox.de"

# Mapping of the accepted URL schemes to the HTTP protocol used to reach
# the server.
_SCHEME_PROTOCOLS: dict[str, str] = {
    "webdav": "http",
    "webdavs": "https",
    "storagebox": "https",
    "http": "http",
    "https": "https",
}


def normalize_path(path: str | None) -> str:
    """Normalize a path intended to be part of a URL.

    A path of the form "///a/b/c///../d/e/" would be normalized as "/a/b/d/e".
    The returned path is always absolute, i.e. starts by "/" and never
    ends by "/" except when the path is exactly "/". It does not contain
    consecutive "/" either.

    Parameters
    ----------
    path : `str`, optional
        Path to normalize (e.g., '/path/to/..///normalize/').

    Returns
    -------
    path : `str`
        Normalized path (e.g., '/path/normalize').
    """
    return "/" if not path else "/" + posixpath.normpath(path).lstrip("/")


def normalize_url(url: str) -> str:
    """Normalize a URL for matching against configured endpoints.

    The scheme and host are lowercased, the scheme of the URL is preserved
    (a 'storagebox://' URL stays a 'storagebox://' URL) and the path is
    normalized with `normalize_path`.

    Parameters
    ----------
    url : `str`
        URL to normalize (e.g., 'storagebox://U123///path/to//../dir/').

    Returns
    -------
    url : `str`
        Normalized URL (e.g. 'storagebox://u123/path/dir').
    """
    scheme, sep, remainder = url.partition("://")
    if not sep:
        scheme, remainder = "http", url

    netloc, _, path = remainder.partition("/")
    return f"{scheme.lower()}://{netloc.lower()}{normalize_path(path)}"


def redact_url(url: str) -> str:
    """Return a modified `url` with authorization query redacted. The
    goal is that this method should be used for logging URLs to avoid
    leaking authorization tokens.

    Parameters
    ----------
    url : `str`

    Returns
    -------
    redacted_url : `str`
        For instance, when called with an URL like:

            webdavs://host.example.org:1234/a/file.data?key1=value1&authz=token#fragment

        the returned value would be:

            webdavs://host.example.org:1234/a/file.data?key1=value1&authz=[...]#fragment
    """
    parsed_url = urlparse(url)
    if not parsed_url.query:
        return url

    redacted_query: list[str] = []
    for pair in parse_qsl(parsed_url.query):
        if pair[0] == "authz":
            redacted_query.append("authz=[...]")
        else:
            redacted_query.append(f"{pair[0]}={pair[1]}")

    redacted_url = parsed_url._replace(query="&".join(redacted_query))
    return str(urlunparse(redacted_url))


@dataclass(frozen=True)
class ParsedDavUrl:
    """Components of a URL of a resource served by a webDAV server.

    Two instances compare equal if they designate the same HTTP resource,
    regardless of the form of the URL they were parsed from.
    """

    scheme: str
    """HTTP protocol to use: either 'http' or 'https'."""

    host: str
    """Host name, including the port number if any."""

    path: str
    """Absolute path of the resource in the server. Always starts by '/'."""

    origin: str = field(default="", compare=False)
    """Scheme and authority as written by the caller, e.g.
    'storagebox://u12345' or 'webdavs://host.example.org'.
    """

    @property
    def http_url(self) -> str:
        """URL of the resource to send HTTP requests to."""
        return f"{self.scheme}://{self.host}{self.path}"


def parse_dav_url(url: str) -> ParsedDavUrl:
    """Parse a webDAV URL.

    Parameters
    ----------
    url : `str`
        URL of the form 'webdav://host/path', 'webdavs://host/path',
        'storagebox://user/path', 'http://host/path' or 'https://host/path'.
        The path may include glob wildcards, which are left untouched.

    Returns
    -------
    parsed : `ParsedDavUrl`
        Parsed URL. A URL of the form 'storagebox://user/path' is parsed
        as 'https://user.your-storagebox.de/path'.

    Raises
    ------
    InvalidURLError
        If the scheme is not one of the accepted schemes or the URL has no
        host.
    """
    scheme, sep, remainder = url.partition("://")
    scheme = scheme.lower()
    if not sep or (protocol := _SCHEME_PROTOCOLS.get(scheme)) is None:
        raise InvalidURLError(
            f"""Invalid webDAV URL {redact_url(url)}: scheme must be one of """
            f"""{", ".join(f"'{s}://'" for s in _SCHEME_PROTOCOLS)}"""
        )

    host, slash, path = remainder.partition("/")
    if not host:
        raise InvalidURLError(f"Invalid webDAV URL {redact_url(url)}: no host found")

    origin = f"{scheme}://{host}"
    if scheme == "storagebox":
        host = f"{host}.{STORAGEBOX_DOMAIN}"

    return ParsedDavUrl(scheme=protocol, host=host, path=slash + path if slash else "/", origin=origin)


def is_webdav_url(url: str) -> bool:
    """Return True if `url` designates a resource served by a webDAV server.

    Any 'webdav://', 'webdavs://' or 'storagebox://' URL is considered to be
    a webDAV URL, as well as 'http://' or 'https://' URLs of resources
    hosted in a storage box.
    """
    lowered = url.lower()
    if lowered.startswith(("webdav://", "webdavs://", "storagebox://")):
        return True

    if lowered.startswith(("http://", "https://")):
        return f".{STORAGEBOX_DOMAIN}/" in lowered

    return False


class DavConfig:
    """Configurable settings a webDAV client must use when interacting with a
    particular storage endpoint.

    Parameters
    ----------
    config : `dict[str, str]`
        Dictionary of configurable settings for the webdav endpoint which
        base URL is `config["base_url"]`.

        For instance, if `config["base_url"]` is

            "storagebox://u12345/"

        any URL like

            "storagebox://u12345/path/to/any/file"

        will use the settings in this configuration, unless another
        configuration with a longer matching base URL exists.
    """

    # If True, the requests and responses exchanged with this endpoint are
    # logged in detail, at DEBUG level.
    DEFAULT_DEBUG: bool = False

    # Number of times to retry requests before failing. Retry happens only
    # for transient network errors and a few HTTP status codes.
    DEFAULT_RETRIES: int = 3

    # Size (in mebibytes, i.e. 1024*1024 bytes) above which the data written
    # to a file is spilled from memory to a local temporary file before being
    # uploaded.
    DEFAULT_STREAMING_THRESHOLD: int = 50

    # Size of the block (in mebibytes) the webdav client of this endpoint
    # will use for making partial reads. Each partial read will request at
    # least this number of bytes, unless the file is smaller.
    DEFAULT_BLOCK_SIZE: int = 1

    # Timeout in seconds to establish a network connection with the remote
    # server and to wait for data from it.
    DEFAULT_TIMEOUT: float = 30.0

    # Verify the server's certificate and host name.
    DEFAULT_VERIFY: bool = True

    # Path to a directory or certificate bundle file where the certificates
    # of the trusted certificate authorities can be found.
    # If None, the certificates trusted by the system are used.
    DEFAULT_TRUSTED_AUTHORITIES: str | None = None

    # Proxy to send requests through. No proxy is used if the host is None.
    DEFAULT_PROXY_HOST: str | None = None
    DEFAULT_PROXY_PORT: int = 8080

    # Token the webdav client must sent to the server for authentication
    # purposes. The token may be the value of the token itself or the path
    # to a file where the token can be found.
    DEFAULT_TOKEN: str | None = None

    # Reuse network connections and enable TCP keep-alive on them.
    DEFAULT_KEEP_ALIVE: bool = True

    # Directory for the temporary files written data is spilled to. If None
    # the system's temporary directory is used.
    DEFAULT_TMPDIR: str | None = None

    # If this option is set to True, memory usage is computed and reported
    # when executing in debug mode. Computing memory usage is costly, so only
    # set this when debugging.
    DEFAULT_COLLECT_MEMORY_USAGE: bool = False

    def __init__(self, config: dict | None = None) -> None:
        if config is None:
            config = {}

        if (base_url := expand_vars(config.get("base_url"))) is None:
            self._base_url = "_default_"
        else:
            self._base_url = normalize_url(base_url)

        self._debug: bool = bool(config.get("debug", DavConfig.DEFAULT_DEBUG))
        self._retries: int = int(config.get("retries", DavConfig.DEFAULT_RETRIES))
        if self._retries < 0:
            raise ValueError(f"Number of retries for endpoint {self._base_url} must be >= 0")

        self._streaming_threshold: int = 1_048_576 * int(
            config.get("streaming_threshold", DavConfig.DEFAULT_STREAMING_THRESHOLD)
        )
        self._block_size: int = 1_048_576 * int(config.get("block_size", DavConfig.DEFAULT_BLOCK_SIZE))
        self._timeout: float = float(config.get("timeout", DavConfig.DEFAULT_TIMEOUT))
        self._verify: bool = bool(config.get("verify", DavConfig.DEFAULT_VERIFY))
        self._trusted_authorities: str | None = expand_vars(
            config.get("trusted_authorities", DavConfig.DEFAULT_TRUSTED_AUTHORITIES)
        )
        self._proxy_host: str | None = expand_vars(config.get("proxy_host", DavConfig.DEFAULT_PROXY_HOST))
        self._proxy_port: int = int(config.get("proxy_port", DavConfig.DEFAULT_PROXY_PORT))
        self._proxy_username: str | None = expand_vars(config.get("proxy_username"))
        self._proxy_password: str | None = expand_vars(config.get("proxy_password"))
        self._token: str | None = expand_vars(config.get("token", DavConfig.DEFAULT_TOKEN))
        self._keep_alive: bool = bool(config.get("keep_alive", DavConfig.DEFAULT_KEEP_ALIVE))
        self._username: str | None = expand_vars(config.get("username"))
        self._password: str | None = expand_vars(config.get("password"))
        self._tmpdir: str | None = expand_vars(config.get("tmpdir", DavConfig.DEFAULT_TMPDIR))
        self._collect_memory_usage: bool = bool(
            config.get("collect_memory_usage", DavConfig.DEFAULT_COLLECT_MEMORY_USAGE)
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def debug(self) -> bool:
        return self._debug

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def streaming_threshold(self) -> int:
        """Spill threshold, in bytes."""
        return self._streaming_threshold

    @property
    def block_size(self) -> int:
        return self._block_size

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def verify(self) -> bool:
        return self._verify

    @property
    def trusted_authorities(self) -> str | None:
        return self._trusted_authorities

    @property
    def proxy_host(self) -> str | None:
        return self._proxy_host

    @property
    def proxy_port(self) -> int:
        return self._proxy_port

    @property
    def proxy_username(self) -> str | None:
        return self._proxy_username

    @property
    def proxy_password(self) -> str | None:
        return self._proxy_password

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def keep_alive(self) -> bool:
        return self._keep_alive

    @property
    def username(self) -> str | None:
        return self._username

    @property
    def password(self) -> str | None:
        return self._password

    @property
    def tmpdir(self) -> str | None:
        return self._tmpdir

    @property
    def collect_memory_usage(self) -> bool:
        return self._collect_memory_usage


class DavConfigPool:
    """Registry of configurable settings for all known webDAV endpoints.

    Parameters
    ----------
    filename : `str`, optional
        Name of an environment variable which value is the path of the
        configuration file, e.g. 'WEBDAVFS_CONFIG'. The path itself can
        include environment variables, e.g. '$HOME/path/to/config.yaml'.

        The configuration file is a YAML file with the structure below:

          - base_url: "storagebox://u12345/"
            username: "u12345"
            password: "${STORAGEBOX_PASSWORD}"
            retries: 5
            streaming_threshold: 100
            timeout: 60.0

          - base_url: "webdavs://webdav.example.org:1234/data/"
            token: "/path/to/bearer/token/file"
            trusted_authorities: "/etc/grid-security/certificates"
            proxy_host: "proxy.example.org"
            proxy_port: 3128
            keep_alive: false
            debug: true

        All settings are optional. If no settings are found in the
        configuration file for a particular webDAV endpoint, sensible
        defaults will be used.

        There is only a single instance of this class. This thread-safe
        singleton is initialized by its first construction: later
        constructions return the same instance and ignore `filename`.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, filename: str | None = None) -> DavConfigPool:
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)

        return cls._instance

    def __init__(self, filename: str | None = None) -> None:
        with DavConfigPool._lock:
            if getattr(self, "_initialized", False):
                return

            self._load(filename)
            self._initialized = True

    def _load(self, filename: str | None) -> None:
        # Create a default configuration. This configuration is
        # used when a URL doest not match any of the endpoints in the
        # configuration.
        self._default_config: DavConfig = DavConfig()

        # The key of this dictionary is the normalized base URL of the
        # endpoint, e.g. "storagebox://u12345/"
        self._configs: dict[str, DavConfig] = {}

        if filename is None:
            return

        if (filename := os.getenv(filename)) is not None:
            # Expand environment variables and '~' in the file name, if any.
            filename = os.path.expandvars(filename)
            filename = os.path.expanduser(filename)
            with open(filename) as file:
                for config_item in yaml.safe_load(file) or []:
                    config = DavConfig(config_item)
                    if config.base_url not in self._configs:
                        self._configs[config.base_url] = config
                    else:
                        # We already have a configuration for the same
                        # endpoint. That is likely a human error in
                        # the configuration file.
                        raise ValueError(
                            f"""configuration file {filename} contains two configurations for """
                            f"""endpoint {config.base_url}"""
                        )

            log.debug("loaded configuration for %d webDAV endpoints from %s", len(self._configs), filename)

    def get_config_for_url(self, url: str) -> DavConfig:
        """Return the configuration to use when interacting with the server
        which hosts the resource at `url`.

        Parameters
        ----------
        url : `str`
            URL for which to obtain a configuration, in the form used by the
            caller, e.g. 'storagebox://u12345/path/to/file'.

        Notes
        -----
        The configuration whose base URL is the longest prefix of `url`
        is selected. If none matches, the default configuration is returned.
        """
        normalized_url: str = normalize_url(url)
        selected: DavConfig = self._default_config
        longest = -1
        for base_url, config in self._configs.items():
            prefix = base_url.rstrip("/") + "/"
            if (normalized_url == base_url or normalized_url.startswith(prefix)) and len(base_url) > longest:
                selected, longest = config, len(base_url)

        return selected

    def _destroy(self) -> None:
        """Destroy this class singleton instance.

        Helper method to be used in tests to reset global configuration.
        """
        with DavConfigPool._lock:
            DavConfigPool._instance = None


class DavCredentials(NamedTuple):
    """User name and password for Basic authentication."""

    username: str
    password: str


# A credential provider returns the credentials to use for a URL, if any.
CredentialProvider = Callable[[str], DavCredentials | None]


class ConfigCredentialProvider:
    """Provide the credentials found in the configuration of the endpoint
    a URL belongs to.

    Parameters
    ----------
    config_pool : `DavConfigPool`
        Pool of endpoint configurations.
    """

    def __init__(self, config_pool: DavConfigPool) -> None:
        self._config_pool = config_pool

    def __call__(self, url: str) -> DavCredentials | None:
        config = self._config_pool.get_config_for_url(url)
        if config.username is None:
            return None

        return DavCredentials(config.username, config.password or "")


class TokenAuthorizer:
    """Attach a bearer token 'Authorization' header to each request.

    Parameters
    ----------
    token : `str`
        Can be either the path to a local file which contains the
        value of the token or the token itself. If `token` is a file
        it must be protected so that only the owner can read and write it.
    """

    def __init__(self, token: str | None = None) -> None:
        self._token = self._path = None
        self._mtime: float = -1.0
        if token is None:
            return

        self._token = token
        if os.path.isfile(token):
            self._path = os.path.abspath(token)
            if not self._is_protected(self._path):
                raise PermissionError(
                    f"""Authorization token file at {self._path} must be protected for access only """
                    """by its owner"""
                )
            self._refresh()

    def _refresh(self) -> None:
        """Read the token file (if any) if its modification time is more recent
        than the last time we read it.
        """
        if self._path is None:
            return

        if (mtime := os.stat(self._path).st_mtime) > self._mtime:
            log.debug("Reading authorization token from file %s", self._path)
            self._mtime = mtime
            with open(self._path) as f:
                self._token = f.read().rstrip("\n")

    def _is_protected(self, filepath: str) -> bool:
        """Return true if the permissions of file at filepath only allow for
        access by its owner.

        Parameters
        ----------
        filepath : `str`
            Path of a local file.
        """
        if not os.path.isfile(filepath):
            return False

        mode = stat.S_IMODE(os.stat(filepath).st_mode)
        owner_accessible = bool(mode & stat.S_IRWXU)
        group_accessible = bool(mode & stat.S_IRWXG)
        other_accessible = bool(mode & stat.S_IRWXO)
        return owner_accessible and not group_accessible and not other_accessible

    def set_authorization(self, headers: dict[str, str]) -> None:
        """Add the 'Authorization' header to `headers`, unless it already
        has one.

        Parameters
        ----------
        headers : `dict` [ `str`, `str` ]
            Dict to augment with authorization information.
        """
        if self._token is None or "Authorization" in headers:
            return

        self._refresh()
        headers["Authorization"] = f"Bearer {self._token}"


def expand_vars(value: str | None) -> str | None:
    """Expand the environment variables in `value`.

    Parameters
    ----------
    value : `str` or `None`
        String which may include an environment variable
        (e.g. '$HOME/path/to/my/file').

    Returns
    -------
    value: `str`
        The string with the values of the environment variables expanded.
        Values which are not strings are returned unmodified.
    """
    return os.path.expandvars(value) if isinstance(value, str) else value


def dump_response(method: str, resp: DavResponse, dump_body: bool = False) -> None:
    """Dump response for debugging purposes.

    Parameters
    ----------
    method : `str`
        Method name to include in log output.
    resp : `DavResponse`
        Response to dump. The status line and headers of every redirection
        hop are dumped.
    """
    log.debug("%s %s", method, redact_url(resp.url))
    for hop in resp.hops:
        log.debug("   %s", hop.status_line)
        for header, value in hop.headers.items():
            if header.lower() == "authorization":
                value = "[...]"
            log.debug("   %s: %s", header, value)

    if resp.error is not None:
        log.debug("   transport error: %s", resp.error)

    if dump_body:
        log.debug("   response body length: %d", len(resp.body))
