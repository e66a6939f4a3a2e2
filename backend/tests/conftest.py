from unittest.mock import AsyncMock, MagicMock

import pytest


# ── Patch settings before any other import ──────────────────────────────────
@pytest.fixture(autouse=True)
def _patch_settings(monkeypatch, tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    from src.core.config import settings
    monkeypatch.setattr(settings, "secret_key", "test-secret-key-for-unit-tests-0123456789")
    monkeypatch.setattr(settings, "public_base_url", "https://invoicing.example.com")
    monkeypatch.setattr(settings, "storage_dir", str(storage_dir))
    monkeypatch.setattr(settings, "request_max_age_seconds", 300)
    monkeypatch.setattr(settings, "webhook_max_attempts", 3)
    monkeypatch.setattr(settings, "webhook_base_delay_seconds", 1.0)
    monkeypatch.setattr(settings, "smtp_host", "smtp.example.com")
    monkeypatch.setattr(settings, "email_from_address", "faktura@example.com")
    monkeypatch.setattr(settings, "email_bcc", "")
    monkeypatch.setattr(settings, "email_reply_to", "")


@pytest.fixture
def mock_db():
    """Create a mock async database session."""
    db = AsyncMock()
    db.flush = AsyncMock()
    db.add = MagicMock()
    db.delete = AsyncMock()
    db.execute = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.info = {}
    return db
