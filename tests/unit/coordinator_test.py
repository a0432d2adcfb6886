import asyncio
import functools
from mockito import mock, unstub, when
import requests
from unittest import IsolatedAsyncioTestCase, TestCase

from fetchcache.cache import MemoryCache
from fetchcache.client import RequestClient
from fetchcache.coordinator import FetchCoordinator
from fetchcache.errors import CancellationError, ClientError, ServerError
from fetchcache.model import FetchOptions, FetchState
from fetchcache.signals import Signal
from fetchcache.timing import ManualScheduler

URL = 'https://api.example.com/users'


async def fetch_user(user_id):
    return {'id': user_id}


class ControlledSource:
    """
    A fetch whose outcome the test decides, one future per call.
    """

    def __init__(self):
        self.calls = []

    async def __call__(self):
        future = asyncio.get_running_loop().create_future()
        self.calls.append(future)
        return await future


class StubbornSource(ControlledSource):
    """
    A fetch that ignores cancellation and resolves anyway.
    """

    async def __call__(self):
        future = asyncio.get_running_loop().create_future()
        self.calls.append(future)
        while True:
            try:
                return await asyncio.shield(future)
            except asyncio.CancelledError:
                continue


class ScriptedSource:
    """
    Resolves immediately with the next outcome. The last outcome repeats.
    """

    def __init__(self, *outcomes):
        self.__outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.__outcomes.pop(0) if len(self.__outcomes) > 1 else self.__outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class CoordinatorTestCase(IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = ManualScheduler()
        self.cache = MemoryCache(scheduler=self.clock, sweep_interval=None)

    def coordinator(self, source, **options):
        sut = FetchCoordinator(source, FetchOptions(**options), cache=self.cache, scheduler=self.clock)
        self.addCleanup(sut.close)
        return sut


class TestCaching(CoordinatorTestCase):
    async def test_a_fetched_value_is_written_through_to_the_cache(self):
        source = ControlledSource()
        sut = self.coordinator(source, cache_key='users')

        task = asyncio.ensure_future(sut.start())
        await self.clock.tick()
        self.assertTrue(sut.is_loading)
        self.assertEqual(1, len(source.calls))

        source.calls[0].set_result([{'id': 1}])
        await task

        self.assertEqual(FetchState.SUCCESS, sut.state)
        self.assertEqual([{'id': 1}], sut.data)
        self.assertEqual([{'id': 1}], self.cache.get('users'))

    async def test_a_cached_value_is_served_without_fetching(self):
        self.cache.set('users', ['cached'])
        source = ScriptedSource(['fresh'])
        seen = []
        sut = self.coordinator(source, cache_key='users', on_success=seen.append)

        await sut.start()

        self.assertEqual(0, source.calls)
        self.assertTrue(sut.is_success)
        self.assertEqual(['cached'], sut.data)
        self.assertEqual([['cached']], seen)

    async def test_cached_values_expire_after_their_ttl(self):
        source = ScriptedSource('v1', 'v2')
        await self.coordinator(source, cache_key='api:/foo', cache_ttl=5).start()

        self.clock.advance(4)
        second = self.coordinator(source, cache_key='api:/foo', cache_ttl=5)
        await second.start()
        self.assertEqual(1, source.calls)
        self.assertEqual('v1', second.data)

        self.clock.advance(2)
        third = self.coordinator(source, cache_key='api:/foo', cache_ttl=5)
        await third.start()
        self.assertEqual(2, source.calls)
        self.assertEqual('v2', third.data)

    async def test_refetch_bypasses_the_cache(self):
        source = ScriptedSource('v1', 'v2')
        sut = self.coordinator(source, cache_key='users')
        await sut.start()

        await sut.refetch()

        self.assertEqual(2, source.calls)
        self.assertEqual('v2', sut.data)
        self.assertEqual('v2', self.cache.get('users'))

    async def test_skip_cache_neither_reads_nor_writes(self):
        self.cache.set('users', 'stale')
        source = ScriptedSource('fresh')
        sut = self.coordinator(source, cache_key='users', skip_cache=True)

        await sut.start()

        self.assertEqual(1, source.calls)
        self.assertEqual('fresh', sut.data)
        self.assertEqual('stale', self.cache.get('users'))

    async def test_mutate_writes_through_without_fetching(self):
        source = ScriptedSource([1])
        sut = self.coordinator(source, cache_key='numbers')
        await sut.start()

        sut.mutate(lambda numbers: numbers + [2])
        self.assertEqual([1, 2], sut.data)
        self.assertEqual([1, 2], self.cache.get('numbers'))

        sut.mutate([3])
        self.assertEqual([3], self.cache.get('numbers'))

        sut.mutate(None)
        self.assertIsNone(sut.data)
        self.assertEqual([3], self.cache.get('numbers'), 'None is never cached')
        self.assertEqual(1, source.calls)

    async def test_an_unnamed_url_source_is_keyed_by_its_url(self):
        session = mock(requests.Session)
        response = requests.Response()
        response.status_code = 200
        response._content = b'[{"id": 1}]'
        response.encoding = 'utf-8'
        response.headers['Content-Type'] = 'application/json'
        when(session).request(...).thenReturn(response)
        client = RequestClient(session=session, base_url='https://api.example.com')
        sut = FetchCoordinator('/users', client=client, cache=self.cache, scheduler=self.clock)
        self.addCleanup(unstub)

        await sut.start()

        self.assertEqual('fetch:/users', sut.cache_key)
        self.assertEqual([{'id': 1}], sut.data)
        self.assertEqual([{'id': 1}], self.cache.get('fetch:/users'))

    async def test_partials_with_different_arguments_do_not_share_data(self):
        first = self.coordinator(functools.partial(fetch_user, 1))
        second = self.coordinator(functools.partial(fetch_user, 2))

        await first.start()
        await second.start()

        self.assertNotEqual(first.cache_key, second.cache_key)
        self.assertEqual({'id': 1}, first.data)
        self.assertEqual({'id': 2}, second.data)

    async def test_a_lambda_needs_an_explicit_cache_key(self):
        sources = [lambda user_id=user_id: fetch_user(user_id) for user_id in (1, 2)]

        with self.assertRaises(ValueError):
            self.coordinator(sources[0])

        first = self.coordinator(sources[0], cache_key='user:1')
        second = self.coordinator(sources[1], cache_key='user:2')
        await first.start()
        await second.start()
        self.assertEqual({'id': 2}, second.data)

    async def test_a_source_that_skips_the_cache_needs_no_key(self):
        sut = self.coordinator(lambda: fetch_user(3), skip_cache=True)

        await sut.start()

        self.assertIsNone(sut.cache_key)
        self.assertEqual({'id': 3}, sut.data)
        self.assertEqual([], self.cache.keys())


class TestSupersession(CoordinatorTestCase):
    async def test_a_new_trigger_cancels_the_fetch_in_flight(self):
        source = ControlledSource()
        sut = self.coordinator(source, skip_cache=True)

        first = asyncio.ensure_future(sut.trigger())
        await self.clock.tick()
        second = asyncio.ensure_future(sut.trigger())
        await self.clock.tick()

        self.assertTrue(source.calls[0].cancelled())
        await first
        self.assertTrue(sut.is_loading)

        source.calls[1].set_result('second')
        await second
        self.assertEqual('second', sut.data)
        self.assertEqual(2, sut.generation)

    async def test_a_late_result_of_a_superseded_fetch_is_discarded(self):
        source = StubbornSource()
        sut = self.coordinator(source, cache_key='users')

        first = asyncio.ensure_future(sut.trigger())
        await self.clock.tick()
        second = asyncio.ensure_future(sut.refetch())
        await self.clock.tick()

        source.calls[1].set_result('new')
        await second
        source.calls[0].set_result('old')
        await first

        self.assertEqual('new', sut.data)
        self.assertEqual('new', self.cache.get('users'))

    async def test_a_late_failure_of_a_superseded_fetch_is_discarded(self):
        source = StubbornSource()
        errors = []
        sut = self.coordinator(source, skip_cache=True, on_error=errors.append)

        first = asyncio.ensure_future(sut.trigger())
        await self.clock.tick()
        second = asyncio.ensure_future(sut.trigger())
        await self.clock.tick()

        source.calls[1].set_result('new')
        await second
        source.calls[0].set_exception(ServerError(URL, 500))
        await first

        self.assertTrue(sut.is_success)
        self.assertEqual([], errors)

    async def test_a_cancellation_raised_by_the_source_is_not_an_error(self):
        errors = []
        sut = self.coordinator(ScriptedSource(CancellationError(URL)), skip_cache=True, on_error=errors.append)

        with self.assertRaises(asyncio.CancelledError):
            await sut.trigger()

        self.assertEqual([], errors)
        self.assertIsNone(sut.error)
        self.assertEqual(FetchState.IDLE, sut.state)

    async def test_cancelling_the_caller_abandons_the_fetch(self):
        source = ControlledSource()
        sut = self.coordinator(source, skip_cache=True)
        task = asyncio.ensure_future(sut.refetch())
        await self.clock.tick()
        settled = sut.settled()

        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertTrue(source.calls[0].cancelled())
        self.assertEqual(FetchState.IDLE, sut.state)
        self.assertEqual(FetchState.IDLE, await settled)

    async def test_a_timed_out_refetch_keeps_the_previous_data(self):
        source = ControlledSource()
        sut = self.coordinator(source, cache_key='users')
        task = asyncio.ensure_future(sut.start())
        await self.clock.tick()
        source.calls[0].set_result('v1')
        await task

        with self.assertRaises(asyncio.TimeoutError):
            await asyncio.wait_for(sut.refetch(), 0.05)

        self.assertEqual(2, len(source.calls))
        self.assertEqual(FetchState.SUCCESS, sut.state)
        self.assertEqual('v1', sut.data)

        # The coordinator is still usable afterwards.
        task = asyncio.ensure_future(sut.refetch())
        await self.clock.tick()
        source.calls[2].set_result('v2')
        await task
        self.assertEqual('v2', sut.data)



class TestRetries(CoordinatorTestCase):
    async def test_failures_are_retried_until_the_budget_is_spent(self):
        error = ServerError(URL, 503, 'Service Unavailable')
        source = ScriptedSource(error)
        errors = []
        sut = self.coordinator(source, skip_cache=True, retry_count=2, retry_delay=1, on_error=errors.append)

        await sut.trigger()
        self.assertEqual(1, source.calls)
        self.assertTrue(sut.is_loading)
        self.assertEqual(1, sut.retry_count)

        await self.clock.tick(1)
        self.assertEqual(2, source.calls)
        self.assertTrue(sut.is_loading)
        self.assertEqual(2, sut.retry_count)

        await self.clock.tick(1)
        self.assertEqual(3, source.calls)
        self.assertTrue(sut.is_error)
        self.assertIs(error, sut.error)
        self.assertIsNone(sut.data)
        self.assertEqual([error], errors)

    async def test_without_a_budget_the_first_failure_is_final(self):
        error = ClientError(URL, 404, 'Not Found')
        sut = self.coordinator(ScriptedSource(error), skip_cache=True)

        await sut.trigger()

        self.assertTrue(sut.is_error)
        self.assertIs(error, sut.error)
        self.assertEqual(0, self.clock.pending)

    async def test_a_retry_can_succeed(self):
        source = ScriptedSource(ServerError(URL, 500), 'ok')
        sut = self.coordinator(source, cache_key='users', retry_count=1, retry_delay=2)

        await sut.trigger()
        settled = sut.settled()
        await self.clock.tick(1)
        self.assertFalse(settled.done())

        await self.clock.tick(1)

        self.assertEqual(FetchState.SUCCESS, await settled)
        self.assertEqual('ok', sut.data)
        self.assertEqual(0, sut.retry_count)
        self.assertEqual('ok', self.cache.get('users'))

    async def test_an_error_clears_the_data(self):
        source = ScriptedSource('v1', ServerError(URL, 500))
        sut = self.coordinator(source, skip_cache=True)
        await sut.start()

        await sut.refetch()

        self.assertTrue(sut.is_error)
        self.assertIsNone(sut.data)

    async def test_a_new_trigger_cancels_a_pending_retry_and_resets_the_budget(self):
        source = ScriptedSource(ServerError(URL, 500), 'ok')
        sut = self.coordinator(source, skip_cache=True, retry_count=3)

        await sut.trigger()
        self.assertEqual(1, sut.retry_count)
        self.assertEqual(1, self.clock.pending)

        await sut.trigger()

        self.assertEqual('ok', sut.data)
        self.assertEqual(0, sut.retry_count)
        self.assertEqual(0, self.clock.pending)
        await self.clock.tick(5)
        self.assertEqual(2, source.calls)


class TestTriggers(CoordinatorTestCase):
    async def test_a_disabled_coordinator_does_not_fetch_on_start(self):
        source = ScriptedSource('v')
        sut = self.coordinator(source, cache_key='users', enabled=False)

        await sut.start()

        self.assertEqual(0, source.calls)
        self.assertEqual(FetchState.IDLE, sut.state)

    async def test_flapping_enablement_collapses_to_one_fetch(self):
        source = ScriptedSource('v')
        sut = self.coordinator(source, enabled=False, debounce=0.3, skip_cache=True)
        await sut.start()

        sut.set_enabled(True)
        self.clock.advance(0.1)
        sut.set_enabled(False)
        self.clock.advance(0.1)
        sut.set_enabled(True)
        await self.clock.tick(0.3)

        self.assertTrue(sut.enabled)
        self.assertEqual(1, source.calls)
        self.assertEqual('v', sut.data)

    async def test_focus_triggers_a_cache_aware_fetch(self):
        focus = Signal('focus')
        reconnect = Signal('reconnect')
        source = ScriptedSource('v1', 'v2')
        sut = FetchCoordinator(source, FetchOptions(cache_key='users', cache_ttl=5, refetch_on_focus=True),
                               cache=self.cache, scheduler=self.clock, focus=focus, reconnect=reconnect)
        self.addCleanup(sut.close)
        await sut.start()
        self.assertEqual(1, focus.receivers)
        self.assertEqual(0, reconnect.receivers)

        focus.emit()
        await self.clock.tick()
        self.assertEqual(1, source.calls, 'The cached value is still fresh')

        self.clock.advance(6)
        focus.emit()
        await self.clock.tick()
        self.assertEqual(2, source.calls)
        self.assertEqual('v2', sut.data)

    async def test_reconnect_is_ignored_while_disabled(self):
        reconnect = Signal('reconnect')
        source = ScriptedSource('v')
        sut = FetchCoordinator(source, FetchOptions(skip_cache=True, refetch_on_reconnect=True),
                               cache=self.cache, scheduler=self.clock, reconnect=reconnect)
        self.addCleanup(sut.close)
        await sut.start()

        sut.set_enabled(False)
        await self.clock.tick()
        reconnect.emit()
        await self.clock.tick()

        self.assertEqual(1, source.calls)

    async def test_failures_of_background_triggers_are_logged(self):
        def explode(data):
            raise RuntimeError('broken callback')

        sut = self.coordinator(ScriptedSource('v'), skip_cache=True, enabled=False, on_success=explode)
        await sut.start()

        sut.set_enabled(True)
        with self.assertLogs('fetchcache.coordinator', level='ERROR'):
            await self.clock.tick()


class TestTeardown(CoordinatorTestCase):
    async def test_close_cancels_work_in_progress(self):
        focus = Signal('focus')
        source = ControlledSource()
        sut = FetchCoordinator(source, FetchOptions(refetch_on_focus=True, skip_cache=True),
                               cache=self.cache, scheduler=self.clock, focus=focus)
        task = asyncio.ensure_future(sut.start())
        await self.clock.tick()
        settled = sut.settled()

        sut.close()
        await task

        self.assertTrue(sut.closed)
        self.assertTrue(source.calls[0].cancelled())
        self.assertEqual(0, focus.receivers)
        self.assertTrue(settled.done())

        await sut.trigger()
        self.assertEqual(1, len(source.calls), 'A closed coordinator ignores triggers')

    async def test_close_cancels_a_pending_retry(self):
        source = ScriptedSource(ServerError(URL, 500))
        sut = self.coordinator(source, skip_cache=True, retry_count=1)
        await sut.trigger()

        sut.close()
        await self.clock.tick(5)

        self.assertEqual(1, source.calls)
        self.assertEqual(0, self.clock.pending)

    async def test_context_manager(self):
        async with FetchCoordinator(ScriptedSource('v'), FetchOptions(cache_key='users'), cache=self.cache,
                                    scheduler=self.clock) as sut:
            self.assertEqual('v', sut.data)

        self.assertTrue(sut.closed)


class TestConstruction(TestCase):
    def test_a_url_source_needs_a_client(self):
        with self.assertRaises(ValueError):
            FetchCoordinator('/users')

    def test_an_explicit_cache_key_wins(self):
        sut = FetchCoordinator(ScriptedSource('v'), FetchOptions(cache_key='users'),
                               cache=MemoryCache(scheduler=ManualScheduler()), scheduler=ManualScheduler())
        self.assertEqual('users', sut.cache_key)
