"""
API Layer for the Passenger Face Gate

This package provides the FastAPI-based API layer that exposes:
- WebSocket endpoints for real-time enrollment and verification sessions
- REST endpoints for enrolled passengers, verification history and health
"""
