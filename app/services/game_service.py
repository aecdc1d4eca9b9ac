"""Business logic for reveal games: ordered rounds plus phase timings."""
import datetime
import uuid
from typing import Dict, Iterable, List, Optional

from reveal import GameSettings, Round

from ..constants import CATEGORIES, GAME_STATUSES
from ..repositories.game_repository import GameRepository
from ..repositories.image_repository import ImageRepository


def _now() -> str:
    return datetime.datetime.now().isoformat()


def _text(value, label: str) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValueError(f'{label} must be text')
    return value.strip()


class GameService:
    """Manages game definitions, delegating persistence to
    :class:`~app.repositories.game_repository.GameRepository`.

    Rules
    -----
    * Title and category are required; category must be a known one.
    * A game has at least one round and every round references an existing
      image.  Rounds are stored with a 0-based ``sequence_order``.
    * ``status`` is ``'draft'`` or ``'published'``.
    * Phase durations are positive whole seconds (see
      :class:`reveal.GameSettings`).
    """

    def __init__(self, repository: GameRepository, images: ImageRepository) -> None:
        self._repo = repository
        self._images = images

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _rounds(self, image_ids: Iterable[str]) -> List[Dict]:
        if image_ids is not None and not isinstance(image_ids, (list, tuple)):
            raise ValueError('image_ids must be a list')
        ids = [str(i) for i in (image_ids or [])]
        if not ids:
            raise ValueError('Select at least one image')
        missing = [i for i in ids if self._images.find(i) is None]
        if missing:
            raise ValueError(f'Unknown image id(s): {", ".join(missing)}')
        return [{'image_id': image_id, 'sequence_order': n} for n, image_id in enumerate(ids)]

    @staticmethod
    def _title(title: Optional[str]) -> str:
        title = _text(title, 'Title')
        if not title:
            raise ValueError('Title is required')
        return title

    @staticmethod
    def _category(category: Optional[str]) -> str:
        category = _text(category, 'Category')
        if category not in CATEGORIES:
            raise ValueError(f'Unknown category: {category!r}')
        return category

    @staticmethod
    def _status(status: Optional[str]) -> str:
        if status not in GAME_STATUSES:
            raise ValueError(f'Status must be one of {", ".join(GAME_STATUSES)}')
        return status

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(self, title: str, category: str, image_ids: Iterable[str],
               description: str = '', randomize_images: bool = False,
               status: str = 'draft', settings: Optional[Dict] = None) -> Dict:
        """Create and persist a game.

        Raises:
            ValueError: If any field fails validation.
        """
        now = _now()
        record = {
            'id': uuid.uuid4().hex,
            'title': self._title(title),
            'category': self._category(category),
            'description': _text(description, 'Description'),
            'randomize_images': bool(randomize_images),
            'status': self._status(status),
            'settings': GameSettings.from_dict(settings).to_dict(),
            'rounds': self._rounds(image_ids),
            'created_at': now,
            'updated_at': now,
        }
        self._repo.upsert(record)
        return record

    def update(self, game_id: str, title: Optional[str] = None,
               category: Optional[str] = None, description: Optional[str] = None,
               randomize_images: Optional[bool] = None, status: Optional[str] = None,
               settings: Optional[Dict] = None,
               image_ids: Optional[Iterable[str]] = None) -> Optional[Dict]:
        """Edit a game.  ``None`` leaves a field unchanged.

        *settings* is merged over the current durations.

        Returns:
            The updated record, or ``None`` if *game_id* does not exist.
        """
        current = self._repo.find(game_id)
        if not current:
            return None
        record = dict(current)
        if title is not None:
            record['title'] = self._title(title)
        if category is not None:
            record['category'] = self._category(category)
        if description is not None:
            record['description'] = _text(description, 'Description')
        if randomize_images is not None:
            record['randomize_images'] = bool(randomize_images)
        if status is not None:
            record['status'] = self._status(status)
        if settings is not None:
            if not isinstance(settings, dict):
                raise ValueError('Settings must be an object')
            merged = dict(record.get('settings') or {})
            merged.update(settings)
            record['settings'] = GameSettings.from_dict(merged).to_dict()
        if image_ids is not None:
            record['rounds'] = self._rounds(image_ids)
        record['updated_at'] = _now()
        self._repo.upsert(record)
        return record

    def set_status(self, game_id: str, status: str) -> bool:
        return self.update(game_id, status=status) is not None

    def delete(self, game_id: str) -> bool:
        return self._repo.delete(game_id)

    def get(self, game_id: str) -> Optional[Dict]:
        return self._repo.find(game_id)

    def list(self, status: Optional[str] = None,
             category: Optional[str] = None) -> List[Dict]:
        """Return games filtered by status and category, newest first."""
        games = self._repo.all()
        if status:
            games = [g for g in games if g.get('status') == status]
        if category:
            games = [g for g in games if g.get('category') == category]
        return sorted(games, key=lambda g: g.get('created_at', ''), reverse=True)

    def settings_for(self, game_id: str) -> Optional[GameSettings]:
        game = self._repo.find(game_id)
        return GameSettings.from_dict(game.get('settings')) if game else None

    def rounds_for(self, game_id: str) -> Optional[List[Round]]:
        """Resolve the game's rounds, in sequence order, into playable rounds.

        Rounds whose image has since been deleted are skipped.

        Returns:
            List of :class:`reveal.Round`, or ``None`` if the game does not
            exist.
        """
        game = self._repo.find(game_id)
        if not game:
            return None
        rounds = []
        for entry in sorted(game.get('rounds', []), key=lambda r: r.get('sequence_order', 0)):
            image = self._images.find(entry['image_id'])
            if image:
                rounds.append(Round.from_image(image))
        return rounds

    def remove_image(self, image_id: str) -> int:
        """Drop rounds that reference *image_id* from every game.

        Returns:
            Number of games changed.
        """
        changed = 0
        for game_id in self._repo.games_using_image(image_id):
            record = dict(self._repo.find(game_id))
            kept = [r['image_id'] for r in sorted(record['rounds'], key=lambda r: r['sequence_order'])
                    if r['image_id'] != image_id]
            record['rounds'] = [{'image_id': iid, 'sequence_order': n} for n, iid in enumerate(kept)]
            record['updated_at'] = _now()
            self._repo.upsert(record)
            changed += 1
        return changed
