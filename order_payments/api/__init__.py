"""FastAPI application and routes."""
from .dependencies import Services, build_services
from .main import create_app

__all__ = ["create_app", "Services", "build_services"]
