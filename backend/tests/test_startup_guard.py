from __future__ import annotations

import os

import pytest

from inbox_web.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "ADMIN_API_TOKEN": "prod-admin-token-001",
        "WHATSAPP_VERIFY_TOKEN": "prod-verify-token-001",
        "WHATSAPP_SENDER_TYPE": "stub",
        "MODEL_PROVIDER_TYPE": "stub",
        "WEBHOOK_SIGNATURE_MODE": "log_only",
        "INBOX_STORE_BACKEND": "inmemory",
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
    }


def test_create_app_starts_when_required_secrets_are_present() -> None:
    previous = _set_env({**_base_runtime_secret_env(), "INBOX_APP_NAME": None})
    try:
        app = create_app()
        assert app.title == "Inbox Web"
    finally:
        _restore_env(previous)


def test_create_app_enforce_mode_blocks_missing_app_secret() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "WEBHOOK_SIGNATURE_MODE": "enforce",
            "WHATSAPP_APP_SECRET": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="WHATSAPP_APP_SECRET"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warn_mode_allows_placeholder_admin_token() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "ADMIN_API_TOKEN": "dev-admin-token",
        }
    )
    try:
        app = create_app()
        assert any(getattr(route, "path", "") == "/webhook" for route in app.routes)
    finally:
        _restore_env(previous)
