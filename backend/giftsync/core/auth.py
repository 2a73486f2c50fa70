import logging

from giftsync.core.errors import AuthenticationError
from giftsync.schemas.selection import Actor

logger = logging.getLogger("giftsync.auth")


class SessionAuth:
    """The signed-in actor for one user session, shared by every store."""

    def __init__(self, actor: Actor | None = None) -> None:
        self._actor = actor

    @property
    def actor(self) -> Actor | None:
        return self._actor

    @property
    def is_authenticated(self) -> bool:
        return self._actor is not None

    def sign_in(self, actor: Actor) -> None:
        self._actor = actor
        logger.debug("Session signed in user_id=%s", actor.user_id)

    def sign_out(self) -> None:
        self._actor = None

    def require(self) -> Actor:
        if self._actor is None:
            raise AuthenticationError("User not authenticated")
        return self._actor
