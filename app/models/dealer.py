# app/models/dealer.py

import uuid

from sqlalchemy import Column, Integer, String, ForeignKey, TIMESTAMP, Text
from sqlalchemy.orm import relationship

from ..database import Base
from app.core.enums import TeamMemberStatus
from app.core.utils import utc_now


def _uuid_str() -> str:
    return str(uuid.uuid4())


class Dealer(Base):
    """A store owner (or admin) account mirrored from the identity provider."""

    __tablename__ = "dealers"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    user_id = Column(String, unique=True, index=True, nullable=False)  # Identity provider user id
    name = Column(String, nullable=False)
    email = Column(String, index=True, nullable=False)
    role = Column(String, default="dealer", nullable=False)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)

    team_members = relationship("TeamMember", back_populates="store_owner")

    def __repr__(self):
        return f"<Dealer(id={self.id}, email='{self.email}')>"


class StoreConfig(Base):
    """
    Per-store Marketplace configuration, keyed by the owner's email.

    Advertiser ids arrive from several admin screens over time, so more than one
    column may hold them; see app.services.marketplace.advertisers for precedence.
    """

    __tablename__ = "store_configs"

    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=True)
    store_name = Column(String, nullable=True)

    advertisement_id = Column(Text, nullable=True)  # Plain id or JSON array string
    additional_advertisement_ids = Column(Text, nullable=True)  # JSON array string
    primary_advertisement_id = Column(String, nullable=True)
    advertisement_ids = Column(Text, nullable=True)  # JSON array string

    api_key = Column(String, nullable=True)
    api_secret = Column(String, nullable=True)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)

    def __repr__(self):
        return f"<StoreConfig(id={self.id}, email='{self.email}')>"


class TeamMember(Base):
    """A user acting under a store owner's Marketplace account."""

    __tablename__ = "team_members"

    id = Column(Integer, primary_key=True)
    store_owner_id = Column(String(36), ForeignKey("dealers.id"), index=True, nullable=False)
    user_id = Column(String, unique=True, index=True, nullable=True)  # Set once the invite is accepted
    name = Column(String, nullable=False)
    email = Column(String, index=True, nullable=False)
    role = Column(String, default="employee", nullable=False)
    status = Column(String, default=TeamMemberStatus.PENDING.value, nullable=False)

    created_at = Column(TIMESTAMP(timezone=False), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=False), default=utc_now, onupdate=utc_now, nullable=False)

    store_owner = relationship("Dealer", back_populates="team_members")

    def __repr__(self):
        return f"<TeamMember(id={self.id}, email='{self.email}', owner={self.store_owner_id})>"
