"""
Config Service — user settings (Baserow credentials, analyzer key).

Settings are an explicit AppConfig handed to the collaborators.  Where they
are kept is up to the injected store: SQLite in production, a dict in tests.
Environment variables fill in anything the user never set, so a container
can be pre-configured without touching the settings form.
"""
import json
import logging
import os
from typing import Optional

import aiosqlite

from models.schemas import AppConfig, AppConfigUpdate, AppConfigView, DEFAULT_BASEROW_URL

logger = logging.getLogger("bonnenmonster.config")

SETTINGS_KEY = "app_config"

# AppConfig field → environment variable used as a default
ENV_DEFAULTS = {
    "api_url": "BASEROW_API_URL",
    "api_key": "BASEROW_API_KEY",
    "table_id": "BASEROW_TABLE_ID",
    "analyzer_api_key": "ANTHROPIC_API_KEY",
    "log_table_id": "BASEROW_LOG_TABLE_ID",
}

SECRET_FIELDS = {"api_key", "analyzer_api_key"}


class ConfigurationMissing(Exception):
    """Raised when an action needs settings the user hasn't entered yet."""

    def __init__(self, message: str, missing: list[str]):
        self.missing = missing
        super().__init__(message)


# ── Storage backends ──────────────────────────────────────────────────────────

class SqliteSettingsStore:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def load(self) -> Optional[dict]:
        async with self.db.execute(
            "SELECT value FROM settings WHERE key = ?", (SETTINGS_KEY,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Stored settings are not valid JSON — discarding them")
            await self.clear()
            return None
        return data if isinstance(data, dict) else None

    async def save(self, data: dict) -> None:
        await self.db.execute(
            """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, datetime('now'))
               ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at""",
            (SETTINGS_KEY, json.dumps(data)),
        )
        await self.db.commit()

    async def clear(self) -> None:
        await self.db.execute("DELETE FROM settings WHERE key = ?", (SETTINGS_KEY,))
        await self.db.commit()


class MemorySettingsStore:
    def __init__(self, data: Optional[dict] = None):
        self.data = dict(data) if data else None

    async def load(self) -> Optional[dict]:
        return dict(self.data) if self.data is not None else None

    async def save(self, data: dict) -> None:
        self.data = dict(data)

    async def clear(self) -> None:
        self.data = None


# ── Load / update ─────────────────────────────────────────────────────────────

def _env_defaults() -> dict:
    values = {}
    for field, var in ENV_DEFAULTS.items():
        v = os.environ.get(var, "").strip()
        if v:
            values[field] = v
    return values


async def load_config(store) -> AppConfig:
    """
    Stored settings layered over environment defaults.  A stored key wins
    even when blank: that is how the user switches an env default off.
    """
    merged = _env_defaults()
    stored = await store.load() or {}
    for k, v in stored.items():
        if v is not None:
            merged[k] = v
    if not merged.get("log_table_id"):
        merged["log_table_id"] = None
    try:
        return AppConfig.model_validate(merged)
    except ValueError as e:
        logger.warning("Ignoring invalid stored settings: %s", e)
        return AppConfig.model_validate(_env_defaults())


async def update_config(store, update: AppConfigUpdate) -> AppConfig:
    """
    Apply a settings-form submission and persist it immediately.

    Omitted fields keep their stored value.  Blank secrets are ignored too so
    the form never has to echo key material back.  Other blank fields are
    stored as "" so they override any environment default; a blank log
    table id switches audit logging off.
    """
    current = await store.load() or {}
    changes = update.model_dump(exclude_unset=True)

    for field, value in changes.items():
        if value is None:
            continue
        value = value.strip()
        if field in SECRET_FIELDS and not value:
            continue
        if field == "api_url":
            value = value.rstrip("/") or DEFAULT_BASEROW_URL
        if field == "supplier_field":
            value = value or AppConfig.model_fields["supplier_field"].default
        current[field] = value

    await store.save(current)
    logger.info("Settings saved (fields: %s)", ", ".join(sorted(changes)) or "none")
    return await load_config(store)


def config_view(config: AppConfig) -> AppConfigView:
    return AppConfigView(
        api_url=config.api_url,
        api_key_set=bool(config.api_key),
        table_id=config.table_id,
        analyzer_api_key_set=bool(config.analyzer_api_key),
        log_table_id=config.log_table_id,
        supplier_field=config.supplier_field,
        persistence_configured=config.persistence_configured,
        analyzer_configured=config.analyzer_configured,
    )


def require_persistence(config: AppConfig) -> None:
    missing = [name for name, v in (("apiKey", config.api_key), ("tableId", config.table_id)) if not v]
    if missing:
        raise ConfigurationMissing("Baserow is not configured. Open the settings first.", missing)


def require_analyzer(config: AppConfig) -> None:
    if not config.analyzer_api_key:
        raise ConfigurationMissing("The analyzer API key is not configured.", ["analyzerApiKey"])
