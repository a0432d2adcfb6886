"""
Defines the plain types shared by the client, the cache and the coordinator.

These types are as simple as possible in order to most conveniently consume and
produce instances of them. All durations are in seconds.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional


@dataclass
class RequestDescriptor:
    """
    Represents one outbound call, after defaults have been applied.

    A descriptor is built per call by the request client and only lives for the
    duration of that call.
    """

    url: str
    """
    The absolute URL, already resolved against the base URL.
    """

    method: str = 'GET'
    """
    The HTTP method of the request. E.g., "GET".
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    The headers to send, including injected content type and authorization.
    """

    body: Any = None
    """
    The payload. A `str` or `bytes` body is sent as JSON; a mapping is form encoded.
    """

    timeout: float = 10.0
    """
    Upper bound for a single attempt.
    """

    retries: int = 2
    """
    How many times a retryable failure is retried. There are `retries + 1` attempts at most.
    """

    retry_delay: float = 1.0
    """
    The base of the exponential backoff between attempts.
    """

    skip_auth_token: bool = False
    skip_hooks: bool = False


@dataclass
class RequestContext:
    """
    What a before-request observer gets to see.
    """

    url: str
    method: str
    headers: Mapping[str, str]
    body: Any = field(default=None, compare=False)


@dataclass
class ResponseContext:
    """
    What an after-response observer gets to see.

    The body is deliberately absent: observers run before the body is read.
    """

    request: RequestContext
    status: int
    reason: str
    headers: Mapping[str, str]


@dataclass
class CacheEntry:
    """
    A single cached value.

    Entries are owned exclusively by the cache. An entry is valid as long as
    `now - inserted_at <= ttl`, which is only ever checked lazily.
    """

    key: str
    data: Any
    inserted_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


@dataclass
class CacheStats:
    size: int
    max_size: int


class FetchState(Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    SUCCESS = 'success'
    ERROR = 'error'


@dataclass
class FetchOptions:
    """
    Per-subscription options of a fetch coordinator.
    """

    cache_key: Optional[str] = None
    """
    An explicit cache key. When absent, the key is derived from the source.
    """

    cache_ttl: float = 5 * 60
    """
    How long a fetched value stays valid in the cache.
    """

    skip_cache: bool = False
    """
    Neither read from nor write to the cache.
    """

    enabled: bool = True
    """
    The initial value of the enabling condition.
    """

    debounce: float = 0
    """
    Width of the debounce window applied to changes of the enabling condition.
    """

    retry_count: int = 0
    """
    The outer retry budget, on top of the request client's own retries.
    """

    retry_delay: float = 1.0
    refetch_on_focus: bool = False
    refetch_on_reconnect: bool = False

    suspense: bool = False
    """
    Expose the pending fetch to a host scheduler while loading. See `fetchcache.adapter`.
    """

    on_success: Optional[Callable[[Any], None]] = field(default=None, compare=False)
    on_error: Optional[Callable[[Exception], None]] = field(default=None, compare=False)
