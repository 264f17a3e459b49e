"""Access policy for user-facing endpoints."""

from abc import ABC, abstractmethod
from typing import Optional

from fastapi import Request

USER_HEADER = 'X-Authenticated-User'
FAMILIES_HEADER = 'X-Authenticated-Families'


class AccessPolicy(ABC):
    """Resolves who is calling and which families they belong to."""

    @abstractmethod
    def authenticate(self, request: Request) -> Optional[str]:
        """Return the authenticated user id, or None."""
        pass

    @abstractmethod
    def is_family_member(self, request: Request, user_id: str, family_id: str) -> bool:
        pass


class TrustedHeaderAccessPolicy(AccessPolicy):
    """Trusts identity headers set by an authenticating reverse proxy.

    ``X-Authenticated-Families`` is a comma-separated list of family ids.
    """

    def authenticate(self, request: Request) -> Optional[str]:
        user_id = request.headers.get(USER_HEADER, '').strip()
        return user_id or None

    def is_family_member(self, request: Request, user_id: str, family_id: str) -> bool:
        families = request.headers.get(FAMILIES_HEADER, '')
        return family_id in {f.strip() for f in families.split(',') if f.strip()}
