"""Namespace probes — read-only availability checks for the checkout form."""

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from app.api.deps import Reservations
from app.services.validation import (
    MAX_SUGGESTIONS,
    is_valid_namespace,
    normalize_namespace,
    subdomain_candidates,
)

router = APIRouter(prefix="/namespaces", tags=["namespaces"])


class AvailabilityResponse(BaseModel):
    name: str
    valid: bool
    available: bool


class SuggestionRequest(BaseModel):
    base_name: str = Field(min_length=1, max_length=100)


class SuggestionResponse(BaseModel):
    suggestions: list[str]


@router.get("/availability", response_model=AvailabilityResponse)
async def check_availability(
    reservations: Reservations,
    name: str = Query(min_length=1, max_length=255),
) -> AvailabilityResponse:
    """Whether ``name`` could be reserved right now. Holds nothing."""
    normalized = normalize_namespace(name)
    if not is_valid_namespace(normalized):
        return AvailabilityResponse(name=normalized, valid=False, available=False)
    available = await reservations.is_available(normalized)
    return AvailabilityResponse(name=normalized, valid=True, available=available)


@router.post("/suggestions", response_model=SuggestionResponse)
async def suggest_subdomains(
    body: SuggestionRequest, reservations: Reservations
) -> SuggestionResponse:
    suggestions: list[str] = []
    for candidate in subdomain_candidates(body.base_name):
        if await reservations.is_available(candidate):
            suggestions.append(candidate)
        if len(suggestions) >= MAX_SUGGESTIONS:
            break
    return SuggestionResponse(suggestions=suggestions)
