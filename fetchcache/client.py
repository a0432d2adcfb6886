import asyncio
import functools
import logging
from typing import Any, Mapping, Optional

import requests
from requests.structures import CaseInsensitiveDict

from .auth import AuthContext
from .errors import CancellationError, ClassifiedError, ParseError, TransportError, classify_status
from .hooks import LifecycleHooks
from .model import RequestContext, RequestDescriptor, ResponseContext
from .timing import AsyncioScheduler, Scheduler
from .util import backoff_delay, dump_json, join_url


logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = 'application/json'


def _error_body(response: requests.Response) -> Any:
    """
    Best-effort decoding of the body of an error response.
    """
    try:
        if JSON_CONTENT_TYPE in response.headers.get('Content-Type', ''):
            return response.json()
        return response.text
    except ValueError:
        logger.debug('Could not decode the body of an error response from {}'.format(response.url))
        return None


class RequestClient:
    """
    Issues HTTP requests with a per-attempt timeout, retries with exponential
    backoff, bearer-token injection and lifecycle observers.

    The actual I/O is done by a `requests.Session` on the event loop's default
    executor, so a call only ever suspends the calling coroutine.
    """

    def __init__(self,
                 session: Optional[requests.Session] = None,
                 base_url: str = '',
                 auth: Optional[AuthContext] = None,
                 hooks: Optional[LifecycleHooks] = None,
                 scheduler: Optional[Scheduler] = None,
                 timeout: float = 10.0,
                 retries: int = 2,
                 retry_delay: float = 1.0) -> None:
        self.__session = session if session is not None else requests.Session()
        self.__base_url = base_url
        self.__auth = auth if auth is not None else AuthContext()
        self.__hooks = hooks if hooks is not None else LifecycleHooks()
        self.__scheduler = scheduler or AsyncioScheduler()
        self.__timeout = timeout
        self.__retries = retries
        self.__retry_delay = retry_delay

    @property
    def base_url(self) -> str:
        return self.__base_url

    @property
    def hooks(self) -> LifecycleHooks:
        return self.__hooks

    def set_auth_token(self, token: Optional[str]) -> None:
        self.__auth.token = token

    def get_auth_token(self) -> Optional[str]:
        return self.__auth.token

    def describe(self,
                 url: str,
                 method: str = 'GET',
                 headers: Optional[Mapping[str, str]] = None,
                 body: Any = None,
                 timeout: Optional[float] = None,
                 retries: Optional[int] = None,
                 retry_delay: Optional[float] = None,
                 skip_auth_token: bool = False,
                 skip_hooks: bool = False) -> RequestDescriptor:
        """
        Build the descriptor of a call: resolve the URL and compute the final headers.
        """
        headers = CaseInsensitiveDict(headers or {})

        # Form bodies (mappings, pairs, files) are encoded by requests, which sets its own content type.
        if isinstance(body, (str, bytes)) and 'Content-Type' not in headers:
            headers['Content-Type'] = JSON_CONTENT_TYPE

        if not skip_auth_token:
            authorization = self.__auth.authorization()
            if authorization is not None:
                headers['Authorization'] = authorization

        return RequestDescriptor(url=join_url(self.__base_url, url),
                                 method=method.upper(),
                                 headers=headers,
                                 body=body,
                                 timeout=self.__timeout if timeout is None else timeout,
                                 retries=self.__retries if retries is None else max(retries, 0),
                                 retry_delay=self.__retry_delay if retry_delay is None else retry_delay,
                                 skip_auth_token=skip_auth_token,
                                 skip_hooks=skip_hooks)

    async def request(self, url: str, **options) -> requests.Response:
        """
        Send a request, retrying transport failures and 5xx responses.

        @param url
          An absolute URL, or a path relative to the base URL.
        @param options
          Any of `method`, `headers`, `body`, `timeout`, `retries`, `retry_delay`,
          `skip_auth_token` and `skip_hooks`.
        @return
          The first 2xx response.
        @throws ClientError
          Immediately, on a 4xx response.
        @throws ServerError, TransportError
          When every attempt failed. The error of the last attempt is raised.
        @throws CancellationError
          When the calling task is cancelled while the request is in flight.
        """
        descriptor = self.describe(url, **options)
        context = RequestContext(url=descriptor.url,
                                 method=descriptor.method,
                                 headers=dict(descriptor.headers),
                                 body=descriptor.body)
        try:
            if not descriptor.skip_hooks:
                await self.__hooks.before_request(context)
            return await self.__send_with_retries(descriptor, context)
        except CancellationError:
            raise
        except asyncio.CancelledError:
            logger.info('Request to {} was cancelled'.format(descriptor.url))
            raise CancellationError(descriptor.url, 'Request to {} was cancelled'.format(descriptor.url)) from None

    async def __send_with_retries(self, descriptor: RequestDescriptor, context: RequestContext) -> requests.Response:
        last_error = None  # type: Optional[ClassifiedError]
        attempts = descriptor.retries + 1

        for attempt in range(attempts):
            try:
                response = await self.__attempt(descriptor)
            except TransportError as e:
                last_error = e
            else:
                if not descriptor.skip_hooks:
                    await self.__hooks.after_response(ResponseContext(request=context,
                                                                      status=response.status_code,
                                                                      reason=response.reason or '',
                                                                      headers=dict(response.headers)))
                if 200 <= response.status_code < 300:
                    return response

                error = classify_status(descriptor.url, response.status_code, response.reason or '',
                                        _error_body(response))
                if not error.retryable:
                    logger.info('{} {} failed with {}. Not retrying.'.format(
                        descriptor.method, descriptor.url, response.status_code))
                    raise error
                last_error = error

            logger.info('Attempt {} of {} for {} {} failed: {}'.format(
                attempt + 1, attempts, descriptor.method, descriptor.url, last_error))
            if attempt < descriptor.retries:
                await self.__scheduler.sleep(backoff_delay(descriptor.retry_delay, attempt))

        logger.warning('Giving up on {} {} after {} attempts'.format(descriptor.method, descriptor.url, attempts))
        raise last_error

    async def __attempt(self, descriptor: RequestDescriptor) -> requests.Response:
        """
        Run one attempt, bounded by its own timeout.
        """
        loop = asyncio.get_running_loop()
        attempt = loop.run_in_executor(None, functools.partial(self.__send, descriptor))
        timed_out = False

        def expire():
            nonlocal timed_out
            timed_out = True
            attempt.cancel()

        timer = self.__scheduler.call_later(descriptor.timeout, expire)
        try:
            return await attempt
        except asyncio.CancelledError:
            if timed_out:
                raise TransportError(descriptor.url, 'Timed out after {}s at {}'.format(
                    descriptor.timeout, descriptor.url)) from None
            raise CancellationError(descriptor.url, 'Request to {} was cancelled'.format(descriptor.url)) from None
        except requests.RequestException as e:
            raise TransportError(descriptor.url, 'Transport failure at {}: {}'.format(descriptor.url, e)) from e
        finally:
            timer.cancel()

    def __send(self, descriptor: RequestDescriptor) -> requests.Response:
        body = descriptor.body
        if isinstance(body, str):
            body = body.encode('utf-8')
        return self.__session.request(descriptor.method,
                                      descriptor.url,
                                      headers=dict(descriptor.headers),
                                      data=body,
                                      timeout=descriptor.timeout)

    # region Convenience methods

    async def json(self, url: str, **options) -> Any:
        """
        Send a request and decode its JSON body.

        @throws ParseError
          If the response does not declare a JSON content type, or its body is not valid JSON.
        """
        response = await self.request(url, **options)
        full_url = join_url(self.__base_url, url)

        content_type = response.headers.get('Content-Type', '')
        if JSON_CONTENT_TYPE not in content_type:
            raise ParseError(full_url, 'Expected JSON response, got {}'.format(content_type or 'no content type'),
                             status=response.status_code)
        try:
            return response.json()
        except ValueError as e:
            raise ParseError(full_url, 'Failed to parse JSON response: {}'.format(e),
                             status=response.status_code) from e

    async def text(self, url: str, **options) -> str:
        response = await self.request(url, **options)
        return response.text

    async def content(self, url: str, **options) -> bytes:
        response = await self.request(url, **options)
        return response.content

    async def get(self, url: str, **options) -> Any:
        return await self.json(url, **dict(options, method='GET'))

    async def post(self, url: str, data: Any = None, **options) -> Any:
        return await self.json(url, **dict(options, method='POST', body=self.__encode(data)))

    async def put(self, url: str, data: Any = None, **options) -> Any:
        return await self.json(url, **dict(options, method='PUT', body=self.__encode(data)))

    async def patch(self, url: str, data: Any = None, **options) -> Any:
        return await self.json(url, **dict(options, method='PATCH', body=self.__encode(data)))

    async def delete(self, url: str, **options) -> Any:
        return await self.json(url, **dict(options, method='DELETE'))

    @staticmethod
    def __encode(data: Any) -> Optional[str]:
        return None if data is None else dump_json(data)

    # endregion

    def close(self):
        self.__session.close()
