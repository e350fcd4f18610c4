from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from supabase import Client, create_client

DEFAULT_USERS_TABLE = "mpin_users"
DEFAULT_ATTEMPTS_TABLE = "login_attempts"


@dataclass(frozen=True)
class SupabaseConfig:
    url: str
    service_role_key: str
    users_table: str = DEFAULT_USERS_TABLE
    attempts_table: str = DEFAULT_ATTEMPTS_TABLE

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        url = os.getenv("SUPABASE_URL", "").strip()
        service_role_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "").strip()
        users_table = os.getenv("SUPABASE_USERS_TABLE", DEFAULT_USERS_TABLE).strip() or DEFAULT_USERS_TABLE
        attempts_table = (
            os.getenv("SUPABASE_ATTEMPTS_TABLE", DEFAULT_ATTEMPTS_TABLE).strip() or DEFAULT_ATTEMPTS_TABLE
        )

        if not url or not service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required environment variables.")

        return cls(
            url=url,
            service_role_key=service_role_key,
            users_table=users_table,
            attempts_table=attempts_table,
        )


def create_supabase_client(config: SupabaseConfig) -> Client:
    return create_client(config.url, config.service_role_key)


def single_row(result: Any) -> dict[str, Any] | None:
    data = getattr(result, "data", None)
    if not data:
        return None
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def rows(result: Any) -> list[dict[str, Any]]:
    data = getattr(result, "data", None)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []
