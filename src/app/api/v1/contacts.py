"""REST API endpoints for contact profiles as seen by the CRM.

Role, lead status, conversion timestamps and location are written only by
the transition engine; the endpoints here expose reads plus the two narrow
writes the CRM owns directly (temperature, location resync).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.app.api.deps import get_profile_store, get_profile_sync, get_transition_engine
from src.app.crm.engine import TransitionEngine
from src.app.crm.profiles import ContactProfileStore, LeadProfileSync
from src.app.crm.schemas import ContactProfileRead, DealRead, TemperatureUpdate

router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.get("/{profile_id}", response_model=ContactProfileRead)
async def get_contact(
    profile_id: str,
    profiles: ContactProfileStore = Depends(get_profile_store),
) -> ContactProfileRead:
    return await profiles.get_profile(profile_id)


@router.get("/{profile_id}/deals", response_model=list[DealRead])
async def list_contact_deals(
    profile_id: str,
    engine: TransitionEngine = Depends(get_transition_engine),
) -> list[DealRead]:
    return await engine.list_deals_for_profile(profile_id)


@router.patch("/{profile_id}/temperature", response_model=ContactProfileRead)
async def set_temperature(
    profile_id: str,
    body: TemperatureUpdate,
    profiles: ContactProfileStore = Depends(get_profile_store),
) -> ContactProfileRead:
    """Mark a lead cold, warm or hot."""
    return await profiles.set_temperature(profile_id, body.lead_temperature)


@router.post("/{profile_id}/resync", response_model=ContactProfileRead)
async def resync_location(
    profile_id: str,
    sync: LeadProfileSync = Depends(get_profile_sync),
) -> ContactProfileRead:
    """Recompute the profile's current pipeline/stage from its deals."""
    return await sync.rederive_location(profile_id)
