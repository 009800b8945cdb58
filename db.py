from __future__ import annotations

from typing import Any

import psycopg
from pydantic_settings import BaseSettings, SettingsConfigDict

from dialects import VendorKind


# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────
class Settings(BaseSettings):
    # Read from TENANT_DATABASE_URL or a local .env file
    DATABASE_URL: str = ""
    VENDOR: str | None = None

    model_config = SettingsConfigDict(env_prefix="TENANT_", env_file=".env", extra="ignore")


def get_settings() -> Settings:
    return Settings()


# ─────────────────────────────────────────────────────────────────────────────
# Database Connection
# ─────────────────────────────────────────────────────────────────────────────
def connect(dsn: str, vendor: VendorKind | str = VendorKind.POSTGRES) -> Any:
    """Open a DB-API connection for ``vendor``.

    Autocommit is on: every DDL statement of a migration stands on its own and
    a failure leaves the statements before it applied.
    """
    if VendorKind(vendor) != VendorKind.POSTGRES:
        raise ValueError(
            f"No bundled driver for {vendor}; pass a connection factory to TenantMigrator instead"
        )
    if not dsn:
        raise ValueError("Database URL is empty. Set TENANT_DATABASE_URL or pass --dsn")
    return psycopg.connect(dsn, autocommit=True)
