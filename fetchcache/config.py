"""
Environment-driven configuration, and the composition root helpers built on it.

Recognized variables:

- `FETCHCACHE_API_BASE`: base URL for relative request URLs.
- `FETCHCACHE_TIMEOUT`, `FETCHCACHE_RETRIES`, `FETCHCACHE_RETRY_DELAY`: request defaults.
- `FETCHCACHE_CACHE_MAX_SIZE`, `FETCHCACHE_CACHE_TTL`, `FETCHCACHE_CACHE_SWEEP_INTERVAL`: cache defaults.
  A sweep interval of 0 disables the periodic sweep.
"""

from dataclasses import dataclass
import logging
import os
from typing import Mapping, Optional

import requests

from .auth import AuthContext
from .cache import MemoryCache
from .client import RequestClient
from .hooks import LifecycleHooks
from .timing import Scheduler
from .util import clamp


logger = logging.getLogger(__name__)

MAX_RETRIES = 10


def _read_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning('Ignoring invalid value {!r} for {}. Using {}.'.format(raw, name, default))
        return default
    if value < 0:
        logger.warning('Ignoring negative value {!r} for {}. Using {}.'.format(raw, name, default))
        return default
    return value


def _read_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning('Ignoring invalid value {!r} for {}. Using {}.'.format(raw, name, default))
        return default


@dataclass
class ClientSettings:
    base_url: str = ''
    timeout: float = 10.0
    retries: int = 2
    retry_delay: float = 1.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ClientSettings':
        environ = os.environ if environ is None else environ
        return cls(base_url=environ.get('FETCHCACHE_API_BASE', '').strip(),
                   timeout=_read_float(environ, 'FETCHCACHE_TIMEOUT', 10.0),
                   retries=clamp(_read_int(environ, 'FETCHCACHE_RETRIES', 2), 0, MAX_RETRIES),
                   retry_delay=_read_float(environ, 'FETCHCACHE_RETRY_DELAY', 1.0))


@dataclass
class CacheSettings:
    max_size: int = 100
    default_ttl: float = 5 * 60
    sweep_interval: float = 60

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'CacheSettings':
        environ = os.environ if environ is None else environ
        return cls(max_size=max(_read_int(environ, 'FETCHCACHE_CACHE_MAX_SIZE', 100), 1),
                   default_ttl=_read_float(environ, 'FETCHCACHE_CACHE_TTL', 5 * 60),
                   sweep_interval=_read_float(environ, 'FETCHCACHE_CACHE_SWEEP_INTERVAL', 60))


def create_client(settings: Optional[ClientSettings] = None,
                  auth: Optional[AuthContext] = None,
                  hooks: Optional[LifecycleHooks] = None,
                  scheduler: Optional[Scheduler] = None,
                  session: Optional[requests.Session] = None) -> RequestClient:
    settings = settings or ClientSettings.from_env()
    logger.info('Creating request client for {}'.format(settings.base_url or 'absolute URLs'))
    return RequestClient(session=session,
                         base_url=settings.base_url,
                         auth=auth,
                         hooks=hooks,
                         scheduler=scheduler,
                         timeout=settings.timeout,
                         retries=settings.retries,
                         retry_delay=settings.retry_delay)


def create_cache(settings: Optional[CacheSettings] = None, scheduler: Optional[Scheduler] = None) -> MemoryCache:
    settings = settings or CacheSettings.from_env()
    return MemoryCache(max_size=settings.max_size,
                       default_ttl=settings.default_ttl,
                       scheduler=scheduler,
                       sweep_interval=settings.sweep_interval or None)
