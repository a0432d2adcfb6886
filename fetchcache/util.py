import dataclasses
import functools
import inspect
import json
from typing import Any, Optional
from urllib.parse import urlsplit


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def is_absolute(url: str) -> bool:
    return urlsplit(url).scheme in ('http', 'https')


def join_url(base_url: str, url: str) -> str:
    """
    Resolve `url` against `base_url` unless it is already absolute.
    """
    if is_absolute(url) or not base_url:
        return url
    return '{}/{}'.format(base_url.rstrip('/'), url.lstrip('/'))


def backoff_delay(base: float, attempt: int) -> float:
    """
    The wait after the zero-based `attempt` failed: `base * 2 ** attempt`.
    """
    return base * 2 ** attempt


def _stable_name(source: Any) -> Optional[str]:
    """
    A name for `source` that is the same for every equivalent fetch, or `None` if there is none.
    """
    if isinstance(source, functools.partial):
        name = _stable_name(source.func)
        arguments = [repr(argument) for argument in source.args]
        arguments += ['{}={!r}'.format(key, value) for key, value in sorted(source.keywords.items())]
        rendered = ', '.join(arguments)
        # The default repr of an object only tells instances apart by address.
        if name is None or ' at 0x' in rendered:
            return None
        return '{}({})'.format(name, rendered)

    # Lambdas and local functions share their qualified name with every other closure made in the same scope.
    if not inspect.isfunction(source) or '<' in source.__qualname__:
        return None
    return '{}.{}'.format(source.__module__, source.__qualname__) if source.__module__ else source.__qualname__


def derive_cache_key(source: Any, explicit: Optional[str] = None) -> str:
    """
    Derive a stable cache key from the identity of a fetch.

    An explicit key always wins. A URL maps to `fetch:<url>`, a module-level
    function to `fetch:<module>.<qualified name>`, and a `functools.partial`
    of one to the same followed by the repr of its arguments.

    @throws ValueError
      If `source` has no stable identity, e.g. a lambda, a local function, a
      bound method or a callable instance. Such sources need an explicit key.
    """
    if explicit:
        return explicit
    if isinstance(source, str):
        return 'fetch:{}'.format(source)
    name = _stable_name(source)
    if name is None:
        raise ValueError('Cannot derive a cache key from {!r}. Pass an explicit cache key.'.format(source))
    return 'fetch:{}'.format(name)


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o) and not isinstance(o, type):
            return dataclasses.asdict(o)
        return super().default(o)


def dump_json(data: Any) -> str:
    return json.dumps(data, cls=DataclassJSONEncoder)
