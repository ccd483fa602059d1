"""Database utilities for Supabase integration."""

from typing import Annotated, Iterable

from fastapi import Depends

from supabase import Client, create_client

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> Client:
    """FastAPI dependency for Supabase client."""
    return get_supabase_client(settings)


# Type alias for dependency injection
Database = Annotated[Client, Depends(get_db)]


# =============================================================================
# Table Names
# =============================================================================

USERS_TABLE = "users"
CLIENT_PROFILES_TABLE = "client_profiles"
STUDENT_PROFILES_TABLE = "student_profiles"
JOBS_TABLE = "jobs"
JOB_CATEGORIES_TABLE = "job_categories"
JOB_APPLICATIONS_TABLE = "job_applications"
INCIDENTS_TABLE = "incidents"
STRIPE_ACCOUNTS_TABLE = "student_stripe_accounts"
PAYMENTS_TABLE = "payments"

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


# =============================================================================
# Shared Helpers
# =============================================================================


def is_unique_violation(exc: Exception) -> bool:
    """Check whether a PostgREST error was raised by a unique constraint."""
    if getattr(exc, "code", None) == UNIQUE_VIOLATION:
        return True
    message = str(exc).lower()
    return "duplicate" in message or "unique" in message


async def fetch_by_ids(db: Client, table: str, ids: Iterable, columns: str = "*") -> dict:
    """Fetch rows of ``table`` for a set of ids in one query, keyed by id."""
    unique_ids = sorted({i for i in ids if i is not None}, key=str)
    if not unique_ids:
        return {}
    result = db.table(table).select(columns).in_("id", unique_ids).execute()
    return {row["id"]: row for row in result.data or []}


async def get_user(db: Client, user_id: str) -> dict | None:
    """Get a user by ID."""
    result = db.table(USERS_TABLE).select("*").eq("id", user_id).execute()
    return result.data[0] if result.data else None


async def get_user_by_email(db: Client, email: str) -> dict | None:
    """Get a user by email (case-insensitive, stored lowercased)."""
    result = db.table(USERS_TABLE).select("*").eq("email", email.lower()).execute()
    return result.data[0] if result.data else None
