"""Persisted UI preferences.

Client-side state that survives restarts (last active tab, AMS panel
expansion, last used printer). Kept apart from anything the backend owns:
``load()`` reads the table once, ``get`` is served from memory and every
``set``/``delete`` writes through immediately.
"""

import json
import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetdash.app.core.database import async_session
from fleetdash.app.models.preference import UiPreference

logger = logging.getLogger(__name__)

LAST_ACTIVE_TAB = "last_active_tab"
AMS_PANEL_EXPANDED = "ams_panel_expanded"
LAST_USED_PRINTER = "last_used_printer"


class PreferenceStore:
    """Key/value UI preferences backed by the ``ui_preferences`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession] | None = None):
        self._session_maker = session_maker or async_session
        self._values: dict[str, object] = {}
        self._loaded = False

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self):
        async with self._session_maker() as db:
            result = await db.execute(select(UiPreference))
            rows = result.scalars().all()

        values = {}
        for row in rows:
            try:
                values[row.key] = json.loads(row.value)
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable preference %s", row.key)
        self._values = values
        self._loaded = True
        logger.debug("Loaded %d UI preference(s)", len(values))

    def get(self, key: str, default=None):
        if not self._loaded:
            raise RuntimeError("PreferenceStore.load() must be awaited before reading preferences")
        return self._values.get(key, default)

    def all(self) -> dict[str, object]:
        return dict(self._values)

    async def set(self, key: str, value):
        """Store a JSON-serializable value. Unchanged values are not written."""
        if not self._loaded:
            await self.load()
        if key in self._values and self._values[key] == value:
            return
        encoded = json.dumps(value)

        async with self._session_maker() as db:
            result = await db.execute(select(UiPreference).where(UiPreference.key == key))
            row = result.scalar_one_or_none()
            if row:
                row.value = encoded
            else:
                db.add(UiPreference(key=key, value=encoded))
            await db.commit()

        self._values[key] = value

    async def delete(self, key: str):
        if not self._loaded:
            await self.load()
        if key not in self._values:
            return
        async with self._session_maker() as db:
            await db.execute(delete(UiPreference).where(UiPreference.key == key))
            await db.commit()
        del self._values[key]
