"""
API Routes Package

This package contains route handlers organized by feature:
- enrollment.py: WebSocket endpoint for passenger enrollment
- verification.py: WebSocket endpoint for passenger verification
- management.py: REST endpoints for enrolled passengers
- outbox.py: ordered WebSocket sender shared by the session endpoints
"""

from api.routes.enrollment import router as enrollment_router
from api.routes.verification import router as verification_router
from api.routes.management import router as management_router

__all__ = [
    "enrollment_router",
    "verification_router",
    "management_router",
]
