"""Business logic for the play-session log."""
from typing import Dict, List, Optional


class SessionLogService:
    """Appends finished play sessions to the log and reads them back,
    delegating persistence to the ``database`` module's helper functions.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers, the session clock) control the
    session lifecycle.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``add_session_log``, ``get_session_logs`` and
                ``get_game_stats``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record(self, db, game_session, completed: bool = True):
        """Append *game_session* (a :class:`reveal.GameSession`) to the log.

        Returns:
            The stored row, or ``None`` on failure.
        """
        snapshot = game_session.to_dict()
        return self._db.add_session_log(
            db,
            session_id=snapshot['session_id'],
            game_id=snapshot['game_id'],
            player=snapshot['player'],
            score=snapshot['score'],
            total_rounds=snapshot['total_rounds'],
            completed=completed,
            answers=snapshot['guesses'],
        )

    def recent(self, db, game_id: Optional[str] = None, limit: int = 50) -> List[Dict]:
        """Return up to *limit* logged sessions, newest first."""
        return self._db.get_session_logs(db, game_id=game_id, limit=limit)

    def stats(self, db, game_id: str) -> Dict:
        """Return ``plays``, ``completed`` and ``average_score`` for a game."""
        return self._db.get_game_stats(db, game_id)
