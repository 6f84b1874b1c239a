"""Blocking HTTP helpers for the JSON services of the launcher.
"""

from urllib.error import HTTPError, URLError
from http.client import HTTPResponse
import urllib.request
import logging
import socket
import json
import ssl

from . import LAUNCHER_NAME, LAUNCHER_VERSION

from typing import Optional, Any, Dict, cast


__all__ = ["HttpResponse", "HttpError", "http_request", "http_head_size", "USER_AGENT"]

logger = logging.getLogger(__name__)

USER_AGENT = f"{LAUNCHER_NAME}/{LAUNCHER_VERSION}"
DEFAULT_TIMEOUT = 30.0


class HttpResponse:
    """Fully read response. Status 0 stands for a request that never got an answer, its
    body is then the JSON `null`.
    """

    def __init__(self, res: Optional[HTTPResponse]) -> None:
        if res is None:
            self.status = 0
            self.data = b"null"
            self.headers: Dict[str, str] = {}
        else:
            self.status = res.status
            self.data = res.read()
            self.headers = dict(res.headers.items())

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive lookup of a header.
        """
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return None

    def json(self) -> Any:
        """:raises JSONDecodeError: If the body is not JSON.
        """
        return json.loads(self.data)

    def text(self) -> str:
        return self.data.decode()

    def __repr__(self) -> str:
        return f"<HttpResponse {self.status}>"


class HttpError(Exception):
    """Raised for a non-2xx response, or for a network failure in which case the response
    has status 0 (see `is_network`). The underlying exception is kept as `reason`.
    """

    def __init__(self, res: HttpResponse, method: str, url: str, reason: Exception) -> None:
        self.res = res
        self.method = method
        self.url = url
        self.reason = reason

    def is_network(self) -> bool:
        return self.res.status == 0

    def __str__(self) -> str:
        return f"{self.method} {self.url}: {self.res.status} ({self.reason})"

    def __repr__(self) -> str:
        return f"<HttpError {self.method} {self.url} -> {self.res.status}: {self.reason!r}>"


def ssl_context() -> Optional[ssl.SSLContext]:
    """SSL context trusting certifi's bundle when available, none to let the platform
    defaults apply.
    """
    try:
        import certifi
        return ssl.create_default_context(cafile=certifi.where())
    except ImportError:
        return None


def http_request(method: str, url: str, *,
    data: Optional[bytes] = None,
    headers: Optional[dict] = None,
    accept: Optional[str] = None,
    content_type: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT
) -> HttpResponse:
    """Send a request and read the whole response.

    :raises HttpError: If the status is not 2xx or if the server can't be reached.
    """

    req_headers = {"User-Agent": USER_AGENT}
    if accept is not None:
        req_headers["Accept"] = accept
    if content_type is not None:
        req_headers["Content-Type"] = content_type
    if headers:
        req_headers.update(headers)

    logger.debug("%s %s", method, url)
    req = urllib.request.Request(url, data, req_headers, method=method)

    try:
        with urllib.request.urlopen(req, context=ssl_context(), timeout=timeout) as res:
            return HttpResponse(res)
    except HTTPError as error:
        raise HttpError(HttpResponse(cast(HTTPResponse, error)), method, url, error)
    except (URLError, socket.timeout, ConnectionError) as error:
        raise HttpError(HttpResponse(None), method, url, error)


def http_head_size(url: str, *, timeout: float = DEFAULT_TIMEOUT) -> Optional[int]:
    """Remote size given by the Content-Length of a HEAD request, if any.

    :raises HttpError: If the request fails.
    """
    length = http_request("HEAD", url, timeout=timeout).header("Content-Length")
    if length is None:
        return None
    try:
        return int(length)
    except ValueError:
        return None
