"""Calendar sync domain - Two-way mirror between scheduling entities and the calendar provider"""

# Routers are imported directly from .router by main.py; importing them here
# would pull the database layer into anything that needs only the error types.

__all__ = []
