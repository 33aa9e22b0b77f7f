"""
Settings Router

GET /api/settings  — current settings (secrets reported as set / not set)
PUT /api/settings  — save the settings form; persisted immediately
"""
import aiosqlite
from fastapi import APIRouter, Depends

from db.database import get_db
from models.schemas import AppConfigUpdate, AppConfigView
from services.config_service import SqliteSettingsStore, config_view, load_config, update_config

router = APIRouter()


async def get_settings_store(db: aiosqlite.Connection = Depends(get_db)):
    """Dependency: where user settings are kept. Overridden in tests."""
    return SqliteSettingsStore(db)


@router.get("", response_model=AppConfigView)
async def read_settings(store=Depends(get_settings_store)):
    return config_view(await load_config(store))


@router.put("", response_model=AppConfigView)
async def write_settings(body: AppConfigUpdate, store=Depends(get_settings_store)):
    return config_view(await update_config(store, body))
