import logging
from typing import Optional

from ..integrations.directory import DirectoryClient
from ..models.provisioning import DirectoryCredential, DirectoryObjectRef

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Decides before any mutation whether the requested account is already there.

    The check and the later create are not atomic. Two concurrent callers may
    both pass; the directory's own uniqueness constraint rejects the second
    create and the workflow reports that as AlreadyExists.
    """

    def __init__(self, directory: DirectoryClient) -> None:
        self.directory = directory

    async def check(self, account_name: str, credential: DirectoryCredential) -> Optional[DirectoryObjectRef]:
        existing = await self.directory.find_account(credential, account_name)
        if existing is not None:
            logger.info(
                "gMSA %s already exists at %s; skipping creation",
                account_name,
                existing.distinguished_name,
            )
        return existing

    async def exists(self, account_name: str, credential: DirectoryCredential) -> bool:
        return await self.check(account_name, credential) is not None

    @staticmethod
    def already_exists_message(account_name: str) -> str:
        return f"gMSA '{account_name}' already exists. No action taken."
