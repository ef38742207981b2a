"""
API routers package
"""

from app.routers.discovery import router as discovery_router
from app.routers.discovery import admin_router
