"""Caller identity for Fanverse Studio.

Authentication itself happens upstream (gateway/session layer). By the
time a request reaches this service the caller is identified by the
X-Account-ID header; this module only turns that header into an
AccountContext and rejects anonymous requests.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Header

from fanverse_studio.common.errors import ForbiddenError, UnauthenticatedError
from fanverse_studio.settings import Settings

_settings = Settings()


@dataclass(frozen=True)
class AccountContext:
    """The identified caller."""

    account_id: str
    is_admin: bool = False

    def require_admin(self) -> None:
        if not self.is_admin:
            raise ForbiddenError("Admin access required.")


async def get_current_account(
    x_account_id: Annotated[str | None, Header()] = None,
) -> AccountContext:
    """Resolve the calling account or raise UnauthenticatedError."""
    account_id = (x_account_id or "").strip()
    if not account_id:
        raise UnauthenticatedError("Not authenticated.")
    return AccountContext(
        account_id=account_id,
        is_admin=account_id in _settings.admin_account_ids,
    )
