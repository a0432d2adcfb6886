"""
The error taxonomy shared by the request client and the fetch coordinator.

Every failure of a request is reported as one of the `ClassifiedError` kinds
below. Whether a failure is worth retrying is a property of its kind.
"""

import asyncio
from typing import Any, Optional


class ClassifiedError(Exception):
    kind = 'Error'
    retryable = False

    def __init__(self, url: str, message: Optional[str] = None, status: Optional[int] = None,
                 reason: Optional[str] = None, body: Any = None) -> None:
        super().__init__(message or '{} at {}'.format(self.kind, url))
        self.__url = url
        self.__status = status
        self.__reason = reason
        self.__body = body

    @property
    def url(self) -> str:
        return self.__url

    @property
    def status(self) -> Optional[int]:
        """
        The HTTP status, or `None` when no response was received.
        """
        return self.__status

    @property
    def reason(self) -> Optional[str]:
        return self.__reason

    @property
    def body(self) -> Any:
        """
        The best-effort parsed body of an error response: decoded JSON, text, or `None`.
        """
        return self.__body


class TransportError(ClassifiedError):
    """
    No response was received: the host was unreachable, DNS failed, the connection broke or the attempt timed out.
    """
    kind = 'TransportError'
    retryable = True


class HttpError(ClassifiedError):
    """
    A response was received, but its status is not 2xx.
    """

    def __init__(self, url: str, status: int, reason: str = '', body: Any = None) -> None:
        super().__init__(url, 'HTTP {}: {} at {}'.format(status, reason, url), status=status, reason=reason, body=body)


class ServerError(HttpError):
    kind = 'ServerError'
    retryable = True


class ClientError(HttpError):
    kind = 'ClientError'


class ParseError(ClassifiedError):
    """
    The response body does not match its declared content type.
    """
    kind = 'ParseError'


class CancellationError(ClassifiedError, asyncio.CancelledError):
    """
    The request was abandoned by its caller, e.g. because it was superseded.

    This is not a failure. Being an `asyncio.CancelledError`, it cancels the task
    that raises it, and consumers are expected to discard it silently.
    """
    kind = 'CancellationError'


def classify_status(url: str, status: int, reason: str = '', body: Any = None) -> HttpError:
    if 400 <= status < 500:
        return ClientError(url, status, reason, body)
    return ServerError(url, status, reason, body)
