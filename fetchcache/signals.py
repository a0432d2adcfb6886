import logging
from typing import Callable, List


logger = logging.getLogger(__name__)


class Signal:
    """
    A named event that callbacks can subscribe to.

    The host environment emits signals such as "window focused" or "network
    back online"; fetch coordinators connect to them.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.__receivers = []  # type: List[Callable[[], None]]

    def connect(self, receiver: Callable[[], None]) -> Callable[[], None]:
        """
        Subscribe `receiver`.

        @return
          A function that unsubscribes `receiver` again.
        """
        self.__receivers.append(receiver)

        def disconnect():
            if receiver in self.__receivers:
                self.__receivers.remove(receiver)
        return disconnect

    @property
    def receivers(self) -> int:
        return len(self.__receivers)

    def emit(self) -> None:
        logger.debug('Emitting {} to {} receivers'.format(self.name, len(self.__receivers)))
        for receiver in list(self.__receivers):
            receiver()
