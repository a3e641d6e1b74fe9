"""
Passenger Management API Routes

This module provides REST endpoints for managing enrolled passengers:
- GET /passengers: List all enrolled passengers
- GET /passengers/{passenger_id}: Get enrollment details
- GET /passengers/{passenger_id}/verifications: Verification history
- DELETE /passengers/{passenger_id}: Delete an enrollment
"""

from fastapi import APIRouter, HTTPException, Query

from api.schemas import (
    DeletePassengerResponse,
    PassengerDetailResponse,
    PassengerInfo,
    PassengerListResponse,
    VerificationLogEntry,
    VerificationLogResponse,
)
from facegate.reference_store import get_reference_store

# Create router
router = APIRouter(tags=["passengers"])


@router.get("/passengers", response_model=PassengerListResponse)
async def list_passengers():
    """
    List all enrolled passengers.

    Returns summary information for each enrollment including the capture
    mode and the number of stored descriptors and images.
    """
    store = get_reference_store()
    passengers = store.list_passengers()

    return PassengerListResponse(
        passengers=[PassengerInfo(**p) for p in passengers],
        total=len(passengers),
    )


@router.get("/passengers/{passenger_id}", response_model=PassengerDetailResponse)
async def get_passenger(passenger_id: str):
    """
    Get detailed information about one enrolled passenger.

    Raises:
        404: If the passenger is not enrolled.
    """
    store = get_reference_store()
    passenger = store.get_passenger(passenger_id)

    if passenger is None:
        raise HTTPException(status_code=404, detail=f"Passenger {passenger_id} not found")

    # Load the reference set to get enrollment metadata
    reference_set = store.load_reference_set(passenger_id)
    enrollment_metadata = dict(reference_set.metadata) if reference_set else None

    return PassengerDetailResponse(**passenger, enrollment_metadata=enrollment_metadata)


@router.get("/passengers/{passenger_id}/verifications", response_model=VerificationLogResponse)
async def get_verifications(passenger_id: str, limit: int = Query(100, ge=1, le=1000)):
    """
    Get the verification history of one passenger, most recent first.

    Raises:
        404: If the passenger is not enrolled.
    """
    store = get_reference_store()

    if not store.passenger_exists(passenger_id):
        raise HTTPException(status_code=404, detail=f"Passenger {passenger_id} not found")

    logs = store.get_verification_logs(passenger_id, limit=limit)
    return VerificationLogResponse(
        passenger_id=passenger_id,
        attempts=[VerificationLogEntry(**entry) for entry in logs],
        total=len(logs),
    )


@router.delete("/passengers/{passenger_id}", response_model=DeletePassengerResponse)
async def delete_passenger(passenger_id: str):
    """
    Delete a passenger's enrollment and verification history.

    Raises:
        404: If the passenger is not enrolled.
    """
    store = get_reference_store()

    if not store.passenger_exists(passenger_id):
        raise HTTPException(status_code=404, detail=f"Passenger {passenger_id} not found")

    success = store.delete_reference_set(passenger_id)

    return DeletePassengerResponse(
        success=success,
        passenger_id=passenger_id,
        message=f"Passenger {passenger_id} deleted successfully" if success else "Deletion failed",
    )
