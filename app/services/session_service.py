"""Live play sessions: one in-memory reveal state machine per player."""
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from reveal import GameSession, GameSettings, Round

from .game_service import GameService
from .image_service import ImageService


class SessionService:
    """Creates and drives :class:`reveal.GameSession` objects.

    Sessions are ephemeral and kept in memory only.  A session that reaches
    ``completed`` is passed to *session_log* (if given) so it can be appended
    to the session log; abandoned sessions are logged as incomplete.

    The registry is guarded by a lock; each session serializes its own tick
    and guess handling.
    """

    def __init__(self, games: GameService, images: ImageService,
                 session_log: Optional[Callable[[GameSession, bool], None]] = None) -> None:
        """
        Args:
            games:       Game service used to resolve rounds and durations.
            images:      Image service used for single-image play.
            session_log: ``(session, completed) -> None`` sink for finished
                         sessions.
        """
        self._games = games
        self._images = images
        self._session_log = session_log
        self._sessions: Dict[str, GameSession] = {}
        self._lock = threading.Lock()
        self._log = logging.getLogger('gridreveal.service.sessions')

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _register(self, session: GameSession) -> GameSession:
        with self._lock:
            self._sessions[session.session_id] = session
        self._log.debug("Registered session %s (%d rounds)", session.session_id,
                        session.total_rounds)
        return session

    def _completed(self, session: GameSession) -> None:
        if self._session_log:
            self._session_log(session, True)

    def create_for_game(self, game_id: str, player: Optional[str] = None) -> Optional[GameSession]:
        """Start a waiting session for a stored game.

        Returns:
            The session, or ``None`` if the game does not exist.

        Raises:
            ValueError: If none of the game's images exist any more.
        """
        game = self._games.get(game_id)
        if not game:
            return None
        rounds = self._games.rounds_for(game_id)
        session = GameSession(
            rounds,
            settings=GameSettings.from_dict(game.get('settings')),
            game_id=game_id,
            player=player,
            randomize=bool(game.get('randomize_images')),
            on_complete=self._completed,
        )
        return self._register(session)

    def create_for_image(self, image_id: str, player: Optional[str] = None,
                         settings: Optional[Dict] = None) -> Optional[GameSession]:
        """Start a one-round session for a single image."""
        image = self._images.get(image_id)
        if not image:
            return None
        session = GameSession(
            [Round.from_image(image)],
            settings=GameSettings.from_dict(settings),
            player=player,
            on_complete=self._completed,
        )
        return self._register(session)

    # ------------------------------------------------------------------
    # Driving sessions
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[GameSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> List[GameSession]:
        with self._lock:
            return list(self._sessions.values())

    def start(self, session_id: str) -> Optional[bool]:
        session = self.get(session_id)
        return session.start() if session else None

    def tick(self, session_id: str) -> Optional[bool]:
        session = self.get(session_id)
        return session.tick() if session else None

    def guess(self, session_id: str, text: str) -> Optional[Dict]:
        session = self.get(session_id)
        return session.submit_guess(text) if session else None

    def restart(self, session_id: str) -> bool:
        session = self.get(session_id)
        if not session:
            return False
        session.restart()
        return True

    def tick_all(self) -> int:
        """Tick every live session once.  Returns how many ticks applied."""
        return sum(1 for session in self.active() if session.tick())

    def abandon(self, session_id: str) -> bool:
        """Discard a session.  Unfinished sessions are logged as incomplete."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if not session:
            return False
        if session.abandon() and self._session_log and session.guesses:
            self._session_log(session, False)
        return True

    def prune(self, max_age: timedelta = timedelta(hours=2),
              keep_completed: timedelta = timedelta(minutes=10)) -> int:
        """Drop sessions older than *max_age*, and completed sessions once
        their results have been visible for *keep_completed*."""
        now = datetime.now()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items()
                     if s.created_at < now - max_age
                     or (s.completed_at is not None and s.completed_at < now - keep_completed)]
        removed = sum(1 for sid in stale if self.abandon(sid))
        if removed:
            self._log.debug("Pruned %d sessions", removed)
        return removed
