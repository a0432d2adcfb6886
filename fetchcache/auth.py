import logging
from typing import Optional


logger = logging.getLogger(__name__)


class AuthContext:
    """
    Holds the bearer token shared by every request client of an application.

    The application's composition root owns one instance and hands it to each
    client. The token is expected to change rarely, on login and logout.
    """

    def __init__(self, token: Optional[str] = None) -> None:
        self.__token = token

    @property
    def token(self) -> Optional[str]:
        return self.__token

    @token.setter
    def token(self, token: Optional[str]) -> None:
        logger.info('Bearer token {}'.format('set' if token else 'cleared'))
        self.__token = token

    def authorization(self) -> Optional[str]:
        """
        The value of the `Authorization` header, or `None` when there is no token.
        """
        if not self.__token:
            return None
        return 'Bearer {}'.format(self.__token)
