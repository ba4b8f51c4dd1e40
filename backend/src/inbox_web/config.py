from __future__ import annotations

import os
from dataclasses import dataclass


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Inbox Web"
    api_prefix: str = "/api"
    log_level: str = "INFO"
    inbox_store_backend: str = "inmemory"
    database_url: str = ""
    admin_api_token: str = "dev-admin-token"
    cors_origin: str = "http://localhost:5173"
    runtime_secret_guard_mode: str = "warn"
    # WhatsApp Cloud API channel.
    whatsapp_sender_type: str = "stub"
    whatsapp_access_token: str = ""
    whatsapp_phone_number_id: str = ""
    whatsapp_api_version: str = "v24.0"
    whatsapp_api_base_url: str = "https://graph.facebook.com"
    whatsapp_timeout_seconds: float = 15.0
    whatsapp_verify_token: str = ""
    whatsapp_app_secret: str = ""
    webhook_signature_mode: str = "log_only"
    # Generative model (OpenAI-compatible HTTP API).
    model_provider_type: str = "stub"
    model_api_base_url: str = "https://api.openai.com"
    model_api_key: str = ""
    model_timeout_seconds: float = 30.0
    automation_instruction_char_budget: int = 4000
    status_update_mode: str = "monotonic"

    def whatsapp_configured(self) -> bool:
        return bool(self.whatsapp_access_token.strip() and self.whatsapp_phone_number_id.strip())

    def model_configured(self) -> bool:
        return bool(self.model_api_key.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INBOX_APP_NAME", "Inbox Web"),
        api_prefix=os.getenv("API_PREFIX", "/api"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        inbox_store_backend=os.getenv("INBOX_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", "dev-admin-token"),
        cors_origin=os.getenv("CORS_ORIGIN", "http://localhost:5173"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        whatsapp_access_token=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        whatsapp_phone_number_id=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        whatsapp_api_version=os.getenv("WHATSAPP_API_VERSION", "v24.0"),
        whatsapp_api_base_url=os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com"),
        whatsapp_timeout_seconds=_as_float(os.getenv("WHATSAPP_TIMEOUT_SECONDS"), 15.0),
        whatsapp_verify_token=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        whatsapp_app_secret=os.getenv("WHATSAPP_APP_SECRET", ""),
        webhook_signature_mode=_normalize_mode(
            os.getenv("WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        model_provider_type=_normalize_mode(
            os.getenv("MODEL_PROVIDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        model_api_base_url=os.getenv("MODEL_API_BASE_URL", "https://api.openai.com"),
        model_api_key=os.getenv("MODEL_API_KEY", ""),
        model_timeout_seconds=_as_float(os.getenv("MODEL_TIMEOUT_SECONDS"), 30.0),
        automation_instruction_char_budget=max(
            1, _as_int(os.getenv("AUTOMATION_INSTRUCTION_CHAR_BUDGET"), 4000)
        ),
        status_update_mode=_normalize_mode(
            os.getenv("STATUS_UPDATE_MODE"),
            default="monotonic",
            allowed={"monotonic", "overwrite"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(
        settings.admin_api_token,
        defaults={"dev-admin-token", "change-me-in-production"},
    ):
        issues.append("ADMIN_API_TOKEN is empty or uses a development placeholder")
    if not settings.whatsapp_verify_token.strip():
        issues.append("WHATSAPP_VERIFY_TOKEN is required for the webhook verification handshake")
    if settings.whatsapp_sender_type == "http" and not settings.whatsapp_configured():
        issues.append(
            "WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID are required when WHATSAPP_SENDER_TYPE=http"
        )
    if settings.webhook_signature_mode == "enforce" and not settings.whatsapp_app_secret.strip():
        issues.append("WHATSAPP_APP_SECRET is required when WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.model_provider_type == "http" and not settings.model_configured():
        issues.append("MODEL_API_KEY is required when MODEL_PROVIDER_TYPE=http")
    if settings.inbox_store_backend.strip().lower() in {"postgres", "sqlite"} and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when INBOX_STORE_BACKEND is not inmemory")
    return tuple(issues)
