"""
Pydantic Schemas for API Request/Response Models

This module defines the data models used for communication between the
booking frontend and the face gate service.

These schemas provide:
- Type validation of incoming WebSocket messages
- Automatic documentation in OpenAPI/Swagger
- Clear interface contracts
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# ============================================================
# WebSocket Client Messages
# ============================================================

class EnrollmentClientMessage(BaseModel):
    """Message sent by the client during an enrollment session."""
    type: Literal["frame", "hold_begin", "hold_end", "remove_sample", "finalize", "cancel"] = Field(
        ..., description="Message type"
    )
    data: Optional[str] = Field(None, description="Base64-encoded JPEG image data ('frame' only)")
    sample_id: Optional[str] = Field(None, description="Sample to delete ('remove_sample' only)")


class VerificationClientMessage(BaseModel):
    """Message sent by the client during a verification session."""
    type: Literal["frame", "capture", "cancel"] = Field(..., description="Message type")
    data: Optional[str] = Field(None, description="Base64-encoded JPEG image data ('frame' only)")


# ============================================================
# WebSocket Server Messages
# ============================================================

class SessionStateMessage(BaseModel):
    """Current state of the session after an operation."""
    type: str = Field(default="state", description="Message type")
    state: str = Field(..., description="Session state")


class SamplesChangedMessage(BaseModel):
    """Sent after every sample append or removal."""
    type: str = Field(default="samples_changed", description="Message type")
    count: int = Field(..., description="Number of samples collected")
    max_samples: int = Field(..., description="Maximum number of samples")
    sample_ids: List[str] = Field(default_factory=list, description="Collected sample IDs, in order")
    state: str = Field(..., description="Capture session state")


class EnrollmentCompleteMessage(BaseModel):
    """Sent when the enrollment has been finalized and saved."""
    type: str = Field(default="enrollment_complete", description="Message type")
    passenger_id: str = Field(..., description="Passenger identifier")
    passenger_name: str = Field("", description="Passenger display name")
    n_samples: int = Field(..., description="Number of samples in the reference set")
    mode: str = Field(..., description="Capture mode: 'embed' or 'defer'")
    descriptor_dim: int = Field(0, description="Descriptor dimension (0 for deferred enrollments)")


class VerdictMessage(BaseModel):
    """Verification outcome."""
    type: str = Field(default="verdict", description="Message type")
    is_valid: bool = Field(..., description="Whether the face matches the enrolled identity")
    confidence: float = Field(..., description="Display confidence in [0, 100]")
    message: str = Field(..., description="Human-readable outcome")
    face_detected: bool = Field(True, description="False if no face was found (retry allowed)")
    distance: Optional[float] = Field(None, description="Minimum descriptor distance")


class SessionClosedMessage(BaseModel):
    """Sent when a verified session has released the camera."""
    type: str = Field(default="session_closed", description="Message type")


class ErrorMessage(BaseModel):
    """Error response during a session."""
    type: str = Field(default="error", description="Message type")
    error: str = Field(..., description="Error message")
    code: str = Field(default="FACEGATE_ERROR", description="Error code")


# ============================================================
# Passenger Management Schemas
# ============================================================

class PassengerInfo(BaseModel):
    """Enrolled passenger summary."""
    passenger_id: str = Field(..., description="Passenger identifier")
    passenger_name: str = Field("", description="Passenger display name")
    enrolled_at: str = Field(..., description="Timestamp of enrollment")
    n_descriptors: Optional[int] = Field(None, description="Number of enrolled descriptors")
    n_images: Optional[int] = Field(None, description="Number of stored source images")
    descriptor_dim: Optional[int] = Field(None, description="Descriptor dimension")
    capture_mode: Optional[str] = Field(None, description="Capture mode used at enrollment")


class PassengerListResponse(BaseModel):
    """Response containing list of enrolled passengers."""
    passengers: List[PassengerInfo] = Field(default_factory=list)
    total: int = Field(0, description="Total number of enrolled passengers")


class PassengerDetailResponse(PassengerInfo):
    """Detailed passenger information."""
    reference_path: Optional[str] = Field(None, description="Path to reference file")
    enrollment_metadata: Optional[Dict[str, Any]] = Field(
        None,
        description="Additional enrollment metadata"
    )


class DeletePassengerResponse(BaseModel):
    """Response from passenger deletion."""
    success: bool = Field(..., description="Whether deletion was successful")
    passenger_id: str = Field(..., description="ID of deleted passenger")
    message: str = Field(..., description="Status message")


class VerificationLogEntry(BaseModel):
    """One logged verification attempt."""
    id: int
    passenger_id: str
    timestamp: str
    is_valid: bool
    face_detected: bool
    distance: Optional[float] = None
    confidence: float


class VerificationLogResponse(BaseModel):
    """Verification history of one passenger, most recent first."""
    passenger_id: str
    attempts: List[VerificationLogEntry] = Field(default_factory=list)
    total: int = Field(0, description="Number of attempts returned")


# ============================================================
# Health Check Schemas
# ============================================================

class HealthResponse(BaseModel):
    """System health check response."""
    status: str = Field(..., description="Overall status: 'healthy' or 'degraded'")
    embedder_backend: Optional[str] = Field(None, description="Face embedding backend in use")
    embedder_loaded: bool = Field(..., description="Whether the recognition model is loaded")
    enrolled_passengers: int = Field(..., description="Number of enrolled passengers")
    total_verifications: int = Field(0, description="Number of logged verification attempts")
