import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from .cache import Cache, MemoryCache
from .client import RequestClient
from .errors import CancellationError
from .model import FetchOptions, FetchState
from .signals import Signal
from .timing import AsyncioScheduler, Cancellable, Debouncer, Scheduler
from .util import derive_cache_key


logger = logging.getLogger(__name__)

Source = Union[str, Callable[[], Awaitable[Any]]]


class FetchCoordinator:
    """
    Keeps one subscription's view of a remote resource up to date.

    A coordinator resolves its data from the shared cache when it can and from
    the network otherwise, writing fresh results back into the cache. Only the
    most recently started fetch may change the visible state: every trigger
    bumps a generation counter, cancels the fetch in flight, and a result whose
    generation is no longer current is dropped.

    Failed fetches are retried up to `options.retry_count` times, on top of
    whatever retrying the request client does on its own. Only once that budget
    is spent does the state become `error`.

    Cancelling the task that awaits a trigger abandons the fetch: the state goes
    back to what it was before loading, and the cancellation propagates.
    """

    def __init__(self,
                 source: Source,
                 options: Optional[FetchOptions] = None,
                 client: Optional[RequestClient] = None,
                 cache: Optional[Cache] = None,
                 scheduler: Optional[Scheduler] = None,
                 focus: Optional[Signal] = None,
                 reconnect: Optional[Signal] = None) -> None:
        """
        @param source
          A URL, fetched as JSON through `client`, or a coroutine function returning the data.
        @param cache
          The cache shared between coordinators. Pass the application's instance; the
          default is a private cache.
        @param focus, reconnect
          Signals of the host environment, used when `options` asks to refetch on them.
        """
        if isinstance(source, str) and client is None:
            raise ValueError('A request client is required to fetch {}'.format(source))

        self.__source = source
        self.__options = options or FetchOptions()
        self.__client = client
        self.__scheduler = scheduler or AsyncioScheduler()
        self.__cache = cache if cache is not None else MemoryCache(scheduler=self.__scheduler)
        self.__focus = focus
        self.__reconnect = reconnect
        try:
            self.__cache_key = derive_cache_key(source, self.__options.cache_key)  # type: Optional[str]
        except ValueError:
            # A source that never touches the cache does not need a key.
            if not self.__options.skip_cache:
                raise
            self.__cache_key = None

        self.__state = FetchState.IDLE
        self.__last_settled = FetchState.IDLE
        self.__data = None  # type: Any
        self.__error = None  # type: Optional[Exception]
        self.__retry_count = 0
        self.__generation = 0
        self.__inflight = None  # type: Optional[asyncio.Future]
        self.__retry_timer = None  # type: Optional[Cancellable]
        self.__enabled = self.__options.enabled
        self.__debouncer = Debouncer(self.__scheduler, self.__options.debounce, self.__on_enabled_settled)
        self.__disconnects = []  # type: List[Callable[[], None]]
        self.__tasks = set()  # type: Set[asyncio.Future]
        self.__waiters = []  # type: List[asyncio.Future]
        self.__started = False
        self.__closed = False

    # region Observable state

    @property
    def data(self) -> Any:
        return self.__data

    @property
    def error(self) -> Optional[Exception]:
        return self.__error

    @property
    def state(self) -> FetchState:
        return self.__state

    @property
    def is_loading(self) -> bool:
        return self.__state is FetchState.LOADING

    @property
    def is_error(self) -> bool:
        return self.__state is FetchState.ERROR

    @property
    def is_success(self) -> bool:
        return self.__state is FetchState.SUCCESS

    @property
    def cache_key(self) -> Optional[str]:
        """
        The key under which the data is cached. `None` only when `skip_cache` is set and none could be derived.
        """
        return self.__cache_key

    @property
    def retry_count(self) -> int:
        return self.__retry_count

    @property
    def generation(self) -> int:
        return self.__generation

    @property
    def options(self) -> FetchOptions:
        return self.__options

    @property
    def enabled(self) -> bool:
        """
        The debounced enabling condition.
        """
        return self.__enabled

    @property
    def closed(self) -> bool:
        return self.__closed

    def settled(self) -> asyncio.Future:
        """
        A future resolving to the state once the coordinator is no longer loading.

        Waiting through retry delays is part of loading, so this is what a host
        scheduler should wait on rather than a single request.
        """
        future = asyncio.get_running_loop().create_future()
        if self.__state is FetchState.LOADING and not self.__closed:
            self.__waiters.append(future)
        else:
            future.set_result(self.__state)
        return future

    # endregion

    async def start(self) -> None:
        """
        Connect the refresh signals and, when enabled, load the data (from the cache if possible).
        """
        if self.__started or self.__closed:
            return
        self.__started = True
        if self.__options.refetch_on_focus and self.__focus is not None:
            self.__disconnects.append(self.__focus.connect(self.__on_refresh_signal))
        if self.__options.refetch_on_reconnect and self.__reconnect is not None:
            self.__disconnects.append(self.__reconnect.connect(self.__on_refresh_signal))
        if self.__enabled:
            await self.trigger()

    async def trigger(self, force: bool = False) -> None:
        """
        Load the data, superseding whatever load is in progress.

        @param force
          Skip the cache lookup and always go to the network.
        """
        await self.__run(force, retrying=False)

    async def refetch(self) -> None:
        await self.trigger(force=True)

    def mutate(self, updater: Union[Any, Callable[[Any], Any]]) -> None:
        """
        Replace the data locally, without a network call, and write it through to the cache.

        @param updater
          The new value, or a function computing it from the current one.
        """
        value = updater(self.__data) if callable(updater) else updater
        self.__data = value
        if not self.__options.skip_cache and value is not None:
            self.__cache.set(self.__cache_key, value, self.__options.cache_ttl)

    def set_enabled(self, enabled: bool) -> None:
        """
        Change the enabling condition. Changes are debounced, and a fetch is
        triggered when the settled condition becomes true.
        """
        if self.__closed:
            return
        self.__debouncer.push(bool(enabled))

    def close(self) -> None:
        """
        Tear the subscription down. Work in progress is cancelled and its results are discarded.
        """
        if self.__closed:
            return
        logger.debug('Closing fetch coordinator for {}'.format(self.__cache_key))
        self.__closed = True
        self.__generation += 1
        self.__cancel_retry()
        self.__debouncer.cancel()
        if self.__inflight is not None:
            self.__inflight.cancel()
            self.__inflight = None
        for task in list(self.__tasks):
            task.cancel()
        for disconnect in self.__disconnects:
            disconnect()
        self.__disconnects.clear()
        self.__notify_settled()

    async def __aenter__(self) -> 'FetchCoordinator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    # region Internals

    async def __run(self, force: bool, retrying: bool) -> None:
        if self.__closed:
            return

        self.__supersede()
        if not retrying:
            self.__retry_count = 0
        generation = self.__generation

        if not force and not self.__options.skip_cache:
            cached = self.__cache.get(self.__cache_key)
            if cached is not None:
                logger.debug('Serving {} from the cache'.format(self.__cache_key))
                self.__succeed(cached)
                return

        self.__state = FetchState.LOADING
        self.__error = None
        inflight = asyncio.ensure_future(self.__fetch())
        self.__inflight = inflight

        try:
            data = await inflight
        except (asyncio.CancelledError, CancellationError):
            if not self.__is_current(generation):
                logger.debug('Fetch of {} (generation {}) was superseded'.format(self.__cache_key, generation))
                return
            if not inflight.done():
                inflight.cancel()
            self.__abandon()
            raise
        except Exception as error:
            if self.__is_current(generation):
                self.__fail(error, force)
            return
        finally:
            if self.__inflight is inflight:
                self.__inflight = None

        if not self.__is_current(generation):
            logger.debug('Discarding superseded result for {} (generation {})'.format(self.__cache_key, generation))
            return

        if not self.__options.skip_cache:
            self.__cache.set(self.__cache_key, data, self.__options.cache_ttl)
        self.__retry_count = 0
        self.__succeed(data)

    async def __fetch(self) -> Any:
        if isinstance(self.__source, str):
            return await self.__client.get(self.__source)
        return await self.__source()

    def __supersede(self) -> None:
        self.__generation += 1
        self.__cancel_retry()
        if self.__inflight is not None and not self.__inflight.done():
            self.__inflight.cancel()
        self.__inflight = None

    def __is_current(self, generation: int) -> bool:
        return not self.__closed and generation == self.__generation

    def __succeed(self, data: Any) -> None:
        self.__data = data
        self.__error = None
        self.__state = FetchState.SUCCESS
        self.__last_settled = FetchState.SUCCESS
        self.__notify_settled()
        if self.__options.on_success is not None:
            self.__options.on_success(data)

    def __fail(self, error: Exception, force: bool) -> None:
        if self.__retry_count < self.__options.retry_count:
            self.__retry_count += 1
            logger.info('Fetch of {} failed ({}). Retry {} of {} in {}s.'.format(
                self.__cache_key, error, self.__retry_count, self.__options.retry_count, self.__options.retry_delay))
            self.__retry_timer = self.__scheduler.call_later(self.__options.retry_delay, lambda: self.__retry(force))
            return

        logger.warning('Fetch of {} failed: {}'.format(self.__cache_key, error))
        self.__error = error
        self.__data = None
        self.__state = FetchState.ERROR
        self.__last_settled = FetchState.ERROR
        self.__notify_settled()
        if self.__options.on_error is not None:
            self.__options.on_error(error)

    def __abandon(self) -> None:
        """
        The caller gave up on the current fetch: go back to the last settled state.
        """
        logger.info('Fetch of {} was cancelled by its caller'.format(self.__cache_key))
        self.__state = self.__last_settled
        self.__notify_settled()

    def __notify_settled(self) -> None:
        waiters, self.__waiters = self.__waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(self.__state)

    def __retry(self, force: bool) -> None:
        self.__retry_timer = None
        self.__spawn(self.__run(force, retrying=True))

    def __cancel_retry(self) -> None:
        if self.__retry_timer is not None:
            self.__retry_timer.cancel()
            self.__retry_timer = None

    def __on_enabled_settled(self, enabled: bool) -> None:
        if enabled == self.__enabled:
            return
        self.__enabled = enabled
        if enabled and self.__started and not self.__closed:
            self.__spawn(self.trigger())

    def __on_refresh_signal(self) -> None:
        if self.__enabled and not self.__closed:
            self.__spawn(self.trigger())

    def __spawn(self, coroutine: Awaitable[None]) -> None:
        """
        Run a trigger in the background, e.g. from a timer or a signal.
        """
        task = asyncio.ensure_future(coroutine)
        self.__tasks.add(task)
        task.add_done_callback(self.__on_task_done)

    def __on_task_done(self, task: asyncio.Future) -> None:
        self.__tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error('Background fetch of {} failed'.format(self.__cache_key), exc_info=task.exception())

    # endregion
