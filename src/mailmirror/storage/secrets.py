# =============================================================================
# Secret Store
# =============================================================================
# Account passwords live in the system keyring, never in the config file or
# the database:
#
#   keyring set mailmirror:<account name> <email>
#
# keyring is synchronous (and may talk to D-Bus), so calls run in a worker
# thread.
# =============================================================================

import asyncio
import logging

import keyring
from keyring.errors import KeyringError

from mailmirror.core import Account

logger = logging.getLogger(__name__)


class KeyringSecretStore:
    """SecretStore backed by the system keyring."""

    async def get_password(self, account: Account) -> str | None:
        """
        Look up the password for an account.

        Returns:
            The password, or None if none is stored.

        Raises:
            SecretStoreError: If the keyring backend fails.
        """
        try:
            password = await asyncio.to_thread(
                keyring.get_password, account.keyring_service, account.email
            )
        except KeyringError as e:
            raise SecretStoreError(f"Keyring lookup failed for {account.name}: {e}") from e

        if password is None:
            logger.debug(f"No keyring entry for {account.keyring_service}")
        return password

    async def set_password(self, account: Account, password: str) -> None:
        try:
            await asyncio.to_thread(
                keyring.set_password, account.keyring_service, account.email, password
            )
        except KeyringError as e:
            raise SecretStoreError(f"Cannot store password for {account.name}: {e}") from e
        logger.info(f"Password for {account.name} saved to keyring")


# =============================================================================
# Exceptions
# =============================================================================

class SecretStoreError(Exception):
    """Raised when the keyring backend fails."""
    pass
