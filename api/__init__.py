"""
API module of the service.
Contains the routes and response models.
"""

from .routes import router

__all__ = ["router"]
