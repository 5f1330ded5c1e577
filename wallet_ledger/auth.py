from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from .store import DocumentStore


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Authorizer(ABC):
    @abstractmethod
    async def authorize(self, actor_id: str, target_owner_id: str, required_role: Optional[Role] = None) -> bool:
        """Return whether actor_id may act on a resource owned by target_owner_id."""


class ProfileAuthorizer(Authorizer):
    """
    Checks permissions against the `users/{uid}` profiles in the store.

    Owners may act on their own resources; an unblocked admin may act on
    anything. When an elevated role is required, ownership is not enough.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def is_admin(self, actor_id: str) -> bool:
        profile = await self.store.read(f"users/{actor_id}")
        if not isinstance(profile, dict):
            return False
        return profile.get("role") == Role.ADMIN.value and not profile.get("isBlocked", False)

    async def authorize(self, actor_id: str, target_owner_id: str, required_role: Optional[Role] = None) -> bool:
        if not actor_id:
            return False
        if required_role == Role.ADMIN:
            return await self.is_admin(actor_id)
        if actor_id == target_owner_id:
            return True
        return await self.is_admin(actor_id)
