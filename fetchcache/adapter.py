"""
Suspension adapter for retained-mode rendering hosts.

The coordinator itself is a plain asynchronous API. Hosts that render
synchronously and cooperatively suspend can use `read()`: while a suspense-enabled
coordinator is loading, it raises `Suspended` carrying an awaitable that the host
scheduler waits on before rendering again. Everyone else should use `resolve()`.
"""

import asyncio
from typing import Any

from .coordinator import FetchCoordinator
from .model import FetchState


class Suspended(Exception):
    def __init__(self, pending: asyncio.Future) -> None:
        super().__init__('Data is still loading')
        self.__pending = pending

    @property
    def pending(self) -> asyncio.Future:
        """
        Resolves once the coordinator is no longer loading.
        """
        return self.__pending


def read(coordinator: FetchCoordinator) -> Any:
    """
    Read the coordinator's data.

    @throws Suspended
      If the coordinator has `suspense` enabled and is still loading.
    """
    if coordinator.options.suspense and coordinator.state is FetchState.LOADING:
        raise Suspended(coordinator.settled())
    return coordinator.data


async def resolve(coordinator: FetchCoordinator) -> Any:
    """
    Wait for the coordinator to settle and return its data.

    An idle coordinator is started first.

    @throws Exception
      The coordinator's error, if it settled into the `error` state.
    """
    if coordinator.state is FetchState.IDLE:
        await coordinator.start()
    state = await coordinator.settled()
    if state is FetchState.ERROR:
        raise coordinator.error
    return coordinator.data
