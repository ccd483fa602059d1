"""API routes."""

from .admin import router as admin_router
from .auth import router as auth_router
from .clients import router as clients_router
from .incidents import router as incidents_router
from .jobs import router as jobs_router
from .maintenance import router as maintenance_router
from .payments import router as payments_router
from .students import router as students_router

__all__ = [
    "admin_router",
    "auth_router",
    "clients_router",
    "incidents_router",
    "jobs_router",
    "maintenance_router",
    "payments_router",
    "students_router",
]
