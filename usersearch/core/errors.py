"""Error types for remote fetches.

Every failure in the search and asset pipelines is one of these:
- NetworkError: the transport failed (timeout, refused connection, DNS)
- DecodeError: the payload did not have the expected shape
- HttpStatusError: the server answered with a non-2xx status

They are raised by the remote client and turned into state by the
controllers, so subscribers see them as values rather than exceptions.
"""

from typing import Optional, Dict, Any


class FetchError(Exception):
    """Base class for recoverable remote fetch failures."""

    kind = "fetch"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'url': self.url
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, url={self.url!r})"


class NetworkError(FetchError):
    """Transport-level failure."""

    kind = "network"


class DecodeError(FetchError):
    """Payload could not be decoded into the expected shape."""

    kind = "decode"


class HttpStatusError(FetchError):
    """Server answered with a non-2xx status."""

    kind = "http_status"

    def __init__(self, status_code: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status_code}", url=url)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['status_code'] = self.status_code
        return data
