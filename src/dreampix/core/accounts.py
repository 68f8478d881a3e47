"""Account registration and login on top of the image store."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from dreampix.core.errors import AuthError, AuthErrorKind, StoreError, StoreErrorKind
from dreampix.core.models import Account
from dreampix.core.store import ImageStore

logger = logging.getLogger(__name__)


def timestamp_id() -> str:
    """Millisecond timestamp id, the scheme accounts have always used."""
    return str(time.time_ns() // 1_000_000)


class AccountRegistry:
    """Register and authenticate accounts.

    Credentials are stored and compared verbatim.  Deployments that need real
    security should hash at this boundary; the method signatures stay the
    same.
    """

    def __init__(self, store: ImageStore, id_factory: Callable[[], str] = timestamp_id) -> None:
        self._store = store
        self._id_factory = id_factory

    def register(self, email: str, credential: str, display_name: str | None = None) -> Account:
        """Create a new account.

        Raises:
            AuthError: ``ALREADY_EXISTS`` if the email is registered.
        """
        if self._store.get_account(email) is not None:
            raise AuthError(AuthErrorKind.ALREADY_EXISTS)

        account = Account(
            id=self._id_factory(),
            email=email,
            credential=credential,
            display_name=display_name,
        )
        try:
            self._store.put_account(account)
        except StoreError as e:
            # Lost a race with a concurrent registration for the same email.
            if e.kind is StoreErrorKind.ALREADY_EXISTS:
                raise AuthError(AuthErrorKind.ALREADY_EXISTS) from e
            raise
        logger.info(f"Registered account {account.id} for {email}")
        return account

    def authenticate(self, email: str, credential: str) -> Account:
        """Return the account for matching credentials.

        Raises:
            AuthError: ``INVALID_CREDENTIALS`` if the email is unknown or the
                credential differs.
        """
        account = self._store.get_account(email)
        if account is None or account.credential != credential:
            logger.info(f"Rejected login for {email}")
            raise AuthError(AuthErrorKind.INVALID_CREDENTIALS)
        return account

    def lookup(self, email: str) -> Account | None:
        return self._store.get_account(email)
