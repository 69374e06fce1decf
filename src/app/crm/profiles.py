"""Contact profiles and Lead Profile Sync.

ContactProfileStore is the narrow write surface onto the externally owned
``profiles`` table: create a lead, read it, set its temperature.

LeadProfileSync mirrors deal state onto the profile inside the transition's
unit of work. It never regresses a member back to lead, and keeps
``lead_status == converted`` while any of the profile's deals sits in a won
stage.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import SessionFactory, session_scope
from src.app.crm.exceptions import ContactProfileNotFound, InvalidContact
from src.app.crm.models import ContactProfileModel, DealModel
from src.app.crm.repository import DealRepository
from src.app.crm.schemas import (
    ContactProfileRead,
    ContactRole,
    DealStatus,
    LeadStatus,
    LeadTemperature,
)
from src.app.crm.serialization import model_to_profile, parse_id

logger = structlog.get_logger(__name__)

# Brazilian WhatsApp numbers: country code 55, area code, 8-9 digit number
WHATSAPP_PATTERN = re.compile(r"^55\d{10,11}$")


def normalize_phone(raw: str) -> str:
    """Strip formatting from a phone number and validate the WhatsApp format.

    Raises:
        InvalidContact: If the digits do not form a ``55`` + 10-11 digit number.
    """
    digits = re.sub(r"\D", "", raw or "")
    if not WHATSAPP_PATTERN.match(digits):
        raise InvalidContact(
            f"Phone must be 55 followed by 10 or 11 digits, got {raw!r}"
        )
    return digits


class ContactProfileStore:
    """Reads profiles and writes the fields the CRM owns outside transitions.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def load(
        self, session: AsyncSession, profile_id: str | uuid.UUID
    ) -> ContactProfileModel:
        profile = await session.get(
            ContactProfileModel, parse_id(profile_id, ContactProfileNotFound)
        )
        if profile is None:
            raise ContactProfileNotFound(profile_id)
        return profile

    async def lock(
        self, session: AsyncSession, profile_id: str | uuid.UUID
    ) -> ContactProfileModel:
        """Load a profile with a row lock held until the caller's transaction ends.

        Serializes writers that check-then-insert deals for the same contact.
        """
        result = await session.execute(
            select(ContactProfileModel)
            .where(ContactProfileModel.id == parse_id(profile_id, ContactProfileNotFound))
            .with_for_update()
        )
        profile = result.scalar_one_or_none()
        if profile is None:
            raise ContactProfileNotFound(profile_id)
        return profile

    async def create_lead(
        self,
        session: AsyncSession,
        *,
        name: str,
        phone: str,
        email: str | None = None,
    ) -> ContactProfileModel:
        """Insert a new lead profile (active, cold) into the caller's transaction."""
        clean_name = name.strip()
        if not clean_name:
            raise InvalidContact("Contact name must not be blank")
        profile = ContactProfileModel(
            name=clean_name,
            phone=normalize_phone(phone),
            email=email.strip() if email and email.strip() else None,
            role=ContactRole.LEAD.value,
            lead_status=LeadStatus.ACTIVE.value,
            lead_temperature=LeadTemperature.COLD.value,
        )
        session.add(profile)
        await session.flush()
        return profile

    async def get_profile(self, profile_id: str) -> ContactProfileRead:
        async with session_scope(self._session_factory) as session:
            return model_to_profile(await self.load(session, profile_id))

    async def set_temperature(
        self, profile_id: str, temperature: LeadTemperature
    ) -> ContactProfileRead:
        """Set how engaged a lead currently is. Has no effect on deals."""
        async with session_scope(self._session_factory) as session:
            async with session.begin():
                profile = await self.load(session, profile_id)
                profile.lead_temperature = temperature.value
            logger.info(
                "crm.profile_temperature_set",
                profile_id=str(profile.id),
                temperature=temperature.value,
            )
            return model_to_profile(profile)


class LeadProfileSync:
    """Keeps a profile's lead/conversion fields and location cache in step with its deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        profiles: Store used to load profiles.
        deals: Deal store used for won-deal checks and location rederivation.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        profiles: ContactProfileStore,
        deals: DealRepository,
    ) -> None:
        self._session_factory = session_factory
        self._profiles = profiles
        self._deals = deals

    async def apply(
        self, session: AsyncSession, deal: DealModel, now: datetime
    ) -> ContactProfileModel:
        """Mirror ``deal``'s new state onto its profile. Part of the caller's unit."""
        profile = await self._profiles.load(session, deal.contact_profile_id)
        status = DealStatus(deal.status)
        await self._locate(session, profile, deal, status)

        if status == DealStatus.WON:
            profile.role = ContactRole.MEMBER.value
            profile.lead_status = LeadStatus.CONVERTED.value
            if profile.converted_at is None:
                profile.converted_at = now
        elif await self._deals.has_won_deal(session, profile.id, exclude_deal_id=deal.id):
            # Another deal of this contact is still won; stay converted
            logger.info(
                "crm.profile_conversion_kept",
                profile_id=str(profile.id),
                deal_id=str(deal.id),
                deal_status=status.value,
            )
        elif status == DealStatus.LOST:
            profile.lead_status = LeadStatus.LOST.value
            profile.lost_at = now
        else:
            profile.lead_status = LeadStatus.ACTIVE.value

        await session.flush()
        return profile

    async def lock_profile(
        self, session: AsyncSession, profile_id: uuid.UUID
    ) -> ContactProfileModel:
        return await self._profiles.lock(session, profile_id)

    async def _locate(
        self,
        session: AsyncSession,
        profile: ContactProfileModel,
        deal: DealModel,
        status: DealStatus,
    ) -> None:
        """Point the location cache at the most recently moved active deal.

        A deal that just closed hands the location to the contact's latest
        active deal; with none left, the closed deal stays the last known
        location.
        """
        if status == DealStatus.ACTIVE:
            self.point_to(profile, deal)
            return
        latest = await self._deals.latest_active_for_profile(session, profile.id)
        self.point_to(profile, latest if latest is not None else deal)

    @staticmethod
    def point_to(profile: ContactProfileModel, deal: DealModel) -> None:
        profile.current_pipeline_id = deal.pipeline_id
        profile.current_stage_id = deal.stage_id

    async def rederive_location(self, profile_id: str) -> ContactProfileRead:
        """Recompute current_pipeline_id/current_stage_id from the deal store.

        The location fields are a cache of the most recently moved active
        deal; this repairs them if they drifted. Profiles with no active deal
        keep their last known location.
        """
        async with session_scope(self._session_factory) as session:
            async with session.begin():
                profile = await self._profiles.load(session, profile_id)
                latest = await self._deals.latest_active_for_profile(session, profile.id)
                if latest is not None:
                    self.point_to(profile, latest)
            logger.info(
                "crm.profile_location_rederived",
                profile_id=str(profile.id),
                deal_id=str(latest.id) if latest else None,
            )
            return model_to_profile(profile)
