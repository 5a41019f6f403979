"""Activity log sink: records what a user did. Never fails the caller."""
import asyncio
import logging

from database_manager import DatabaseManager

log = logging.getLogger("timetrack.activity")


class ActivityLogger:
    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    async def log(
        self,
        action: str,
        entity_type: str | None = None,
        entity_id: int | str | None = None,
        details: dict | None = None,
    ) -> bool:
        """Append (action, entity_type, entity_id, details) to the activity log.
        Returns False when nothing was recorded; errors are logged and swallowed."""
        if self.db.current_user_id is None:
            return False
        try:
            await asyncio.to_thread(
                self.db.log_activity, action, entity_type, entity_id, details
            )
        except Exception:
            log.exception("Error logging activity %r for %s %s", action, entity_type, entity_id)
            return False
        return True
