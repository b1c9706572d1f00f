"""
Identity Resolver - who owns the cart right now.

Two states:
- Anonymous: addressed by an opaque session token, minted once per browser
  and kept in local storage
- Authenticated: addressed by the user ID from the auth-state source
"""
import secrets
from dataclasses import dataclass
from typing import Callable, Optional

from cartsync.db import RedisKeys
from cartsync.logging import get_logger, sanitize_id_for_logging
from .models import OwnerIdentity, SessionIdentity, UserIdentity
from .storage import LocalStorage

logger = get_logger(__name__)


def mint_session_token() -> str:
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class IdentityTransition:
    previous: OwnerIdentity
    current: OwnerIdentity

    @property
    def is_login(self) -> bool:
        return isinstance(self.previous, SessionIdentity) and isinstance(self.current, UserIdentity)


TransitionListener = Callable[[IdentityTransition], None]


class IdentityResolver:
    """Resolve the current OwnerIdentity and track login/logout transitions."""

    def __init__(
        self,
        storage: LocalStorage,
        token_factory: Callable[[], str] = mint_session_token,
    ):
        self._storage = storage
        self._token_factory = token_factory
        self._listeners: list[TransitionListener] = []
        self._current: OwnerIdentity = SessionIdentity(token=self._load_or_mint_token())

    @property
    def current(self) -> OwnerIdentity:
        return self._current

    @property
    def is_authenticated(self) -> bool:
        return isinstance(self._current, UserIdentity)

    @property
    def session_token(self) -> Optional[str]:
        match self._current:
            case SessionIdentity(token=token):
                return token
            case UserIdentity():
                return None

    def login(self, user_id: str) -> Optional[IdentityTransition]:
        """
        Handle a login event from the auth-state source.

        Returns:
            The transition, or None when already authenticated as this user
        """
        if not user_id:
            raise ValueError("user_id must be a non-empty string")

        match self._current:
            case UserIdentity(user_id=current_id) if current_id == user_id:
                return None
            case _:
                return self._transition(UserIdentity(user_id=user_id))

    def logout(self) -> Optional[IdentityTransition]:
        """Handle a logout event: mint a fresh session token."""
        match self._current:
            case SessionIdentity():
                return None
            case UserIdentity():
                token = self._token_factory()
                self._storage.set(RedisKeys.SESSION_TOKEN, token)
                return self._transition(SessionIdentity(token=token))

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _load_or_mint_token(self) -> str:
        token = self._storage.get(RedisKeys.SESSION_TOKEN)
        if token:
            return token
        token = self._token_factory()
        self._storage.set(RedisKeys.SESSION_TOKEN, token)
        logger.info("Minted session token %s", sanitize_id_for_logging(token))
        return token

    def _transition(self, new_identity: OwnerIdentity) -> IdentityTransition:
        transition = IdentityTransition(previous=self._current, current=new_identity)
        self._current = new_identity
        logger.info(
            "Identity transition %s -> %s",
            describe_identity(transition.previous),
            describe_identity(transition.current),
        )
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                logger.error("Identity listener failed", exc_info=True)
        return transition


def describe_identity(identity: OwnerIdentity) -> str:
    match identity:
        case SessionIdentity(token=token):
            return f"session:{sanitize_id_for_logging(token)}"
        case UserIdentity(user_id=user_id):
            return f"user:{sanitize_id_for_logging(user_id)}"
