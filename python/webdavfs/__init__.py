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

"""Filesystem-like access to files stored on webDAV servers."""

from ._retry import RetryPolicy, RetryingExecutor
from ._transport import DavSession, SupportsFileUpload, TransportRuntime, TransportStats
from ._upload import BufferUploadSource, FileUploadSource, UploadProgress
from .dav import DavDirectoryTreeBuilder, DavFileSystem
from .davclient import DavClient, extract_hrefs
from .davutils import DavConfig, DavConfigPool, DavCredentials, ParsedDavUrl, is_webdav_url, parse_dav_url
from .errors import *
from .version import *
