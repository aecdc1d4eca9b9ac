"""Repository for reveal games ({game_id: game_record})."""
from typing import Dict, List, Optional
from .base import BaseRepository


class GameRepository(BaseRepository):
    """Persists game definitions to a JSON file.

    Schema::

        {
            "<game_id>": {
                "id":               <str>,
                "title":            <str>,
                "category":         <str>,
                "description":      <str>,
                "randomize_images": <bool>,
                "status":           "draft" | "published",
                "settings":         {"duration15x15": <int>, ...},
                "rounds":           [{"image_id": <str>, "sequence_order": <int>}],
                "created_at":       <ISO-8601 str>,
                "updated_at":       <ISO-8601 str>
            }
        }
    """

    def __init__(self, file_path: str = '.gridreveal/games.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, Dict] = self._load({})

    def find(self, game_id: str) -> Optional[Dict]:
        return self.data.get(str(game_id))

    def all(self) -> List[Dict]:
        return list(self.data.values())

    def upsert(self, record: Dict) -> None:
        self.data[str(record['id'])] = record
        self.save()

    def delete(self, game_id: str) -> bool:
        key = str(game_id)
        if key not in self.data:
            return False
        del self.data[key]
        self.save()
        return True

    def games_using_image(self, image_id: str) -> List[str]:
        """Return ids of games with a round that references *image_id*."""
        return [gid for gid, game in self.data.items()
                if any(r.get('image_id') == image_id for r in game.get('rounds', []))]

    def save(self) -> None:
        self._save(self.data)
