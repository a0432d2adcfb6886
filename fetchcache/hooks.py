"""
Request lifecycle observers.

Observers are injected as ordered lists and are strictly best-effort: each one
runs in isolation, and whatever it raises is logged and dropped. An observer can
never block, alter or fail the request it observes.
"""

import inspect
import logging
from typing import Any, Callable, Iterable, List

from .model import RequestContext, ResponseContext


logger = logging.getLogger(__name__)

BeforeRequest = Callable[[RequestContext], Any]
AfterResponse = Callable[[ResponseContext], Any]


async def _notify(stage: str, observers: List[Callable[[Any], Any]], context: Any) -> None:
    for observer in list(observers):
        try:
            result = observer(context)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning('{} observer {!r} failed. Ignoring it.'.format(stage, observer), exc_info=True)


class LifecycleHooks:
    def __init__(self, before_request: Iterable[BeforeRequest] = (),
                 after_response: Iterable[AfterResponse] = ()) -> None:
        self.__before_request = list(before_request)
        self.__after_response = list(after_response)

    def on_before_request(self, observer: BeforeRequest) -> Callable[[], None]:
        """
        Append an observer that runs before each request is sent.

        @return
          A function that removes the observer again.
        """
        return self.__add(self.__before_request, observer)

    def on_after_response(self, observer: AfterResponse) -> Callable[[], None]:
        """
        Append an observer that runs whenever a response is received, successful or not.

        @return
          A function that removes the observer again.
        """
        return self.__add(self.__after_response, observer)

    @staticmethod
    def __add(observers: List[Callable[[Any], Any]], observer: Callable[[Any], Any]) -> Callable[[], None]:
        observers.append(observer)

        def remove():
            if observer in observers:
                observers.remove(observer)
        return remove

    async def before_request(self, context: RequestContext) -> None:
        await _notify('before-request', self.__before_request, context)

    async def after_response(self, context: ResponseContext) -> None:
        await _notify('after-response', self.__after_response, context)
