# app/services/identity_service.py
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import TeamMemberStatus
from app.core.exceptions import ConfigNotFoundError
from app.models.dealer import Dealer, StoreConfig, TeamMember
from app.schemas.identity import EffectiveIdentity

logger = logging.getLogger(__name__)


class CredentialResolver:
    """
    Works out whose Marketplace account a request acts under.

    A delegated team member always resolves to their store owner's dealer
    record; everyone else resolves to their own store configuration. This runs
    for every request that talks to the Marketplace; there is no global
    "current identity".
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, requesting_user_id: str, requesting_user_email: Optional[str] = None) -> EffectiveIdentity:
        """
        Resolve the effective identity for a request.

        Args:
            requesting_user_id: Identity provider user id of the caller
            requesting_user_email: Caller's email, used when no config is linked by user id

        Returns:
            EffectiveIdentity

        Raises:
            ConfigNotFoundError: No team membership and no own store configuration
        """
        team_member = await self._get_team_member(requesting_user_id)
        if team_member is not None:
            owner = await self.db.get(Dealer, team_member.store_owner_id)
            if owner is None or not owner.email:
                raise ConfigNotFoundError(
                    "Store owner not found for team member",
                    details=f"team member {team_member.id} references missing dealer {team_member.store_owner_id}",
                )
            logger.info(f"User {requesting_user_id} is a team member, acting as store owner {owner.email}")
            return EffectiveIdentity(
                requesting_user_id=requesting_user_id,
                effective_email=owner.email.lower(),
                is_delegated=True,
                delegating_owner_id=owner.id,
                dealer_id=owner.id,
            )

        store_config = await self._get_own_store_config(requesting_user_id, requesting_user_email)
        if store_config is None:
            raise ConfigNotFoundError(
                "Store configuration not found",
                details=f"No team membership or store configuration for user {requesting_user_id}",
            )

        dealer = await self._get_dealer(requesting_user_id, store_config.email)
        return EffectiveIdentity(
            requesting_user_id=requesting_user_id,
            effective_email=store_config.email.lower(),
            is_delegated=False,
            dealer_id=dealer.id if dealer else None,
        )

    async def get_store_config(self, identity: EffectiveIdentity) -> StoreConfig:
        """Store configuration of the effective identity (the owner's, when delegated)"""
        result = await self.db.execute(
            select(StoreConfig).where(func.lower(StoreConfig.email) == identity.effective_email.lower())
        )
        store_config = result.scalars().first()
        if store_config is None:
            raise ConfigNotFoundError(
                "Store configuration not found",
                details=f"No store configuration for {identity.effective_email}",
            )
        return store_config

    async def _get_team_member(self, user_id: str) -> Optional[TeamMember]:
        result = await self.db.execute(
            select(TeamMember).where(
                TeamMember.user_id == user_id,
                TeamMember.status != TeamMemberStatus.INACTIVE.value,
            )
        )
        return result.scalars().first()

    async def _get_own_store_config(self, user_id: str, email: Optional[str]) -> Optional[StoreConfig]:
        result = await self.db.execute(select(StoreConfig).where(StoreConfig.user_id == user_id))
        store_config = result.scalars().first()
        if store_config is None and email:
            result = await self.db.execute(
                select(StoreConfig).where(func.lower(StoreConfig.email) == email.lower())
            )
            store_config = result.scalars().first()
        return store_config

    async def _get_dealer(self, user_id: str, email: str) -> Optional[Dealer]:
        result = await self.db.execute(select(Dealer).where(Dealer.user_id == user_id))
        dealer = result.scalars().first()
        if dealer is None:
            result = await self.db.execute(select(Dealer).where(func.lower(Dealer.email) == email.lower()))
            dealer = result.scalars().first()
        return dealer
