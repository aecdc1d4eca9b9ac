"""Repository for puzzle images ({image_id: image_record})."""
from typing import Dict, List, Optional
from .base import BaseRepository


class ImageRepository(BaseRepository):
    """Persists image records to a JSON file.

    Schema::

        {
            "<image_id>": {
                "id":           <str>,
                "name":         <str, the answer text>,
                "category":     <str>,
                "original_url": <str>,
                "grid15_url":   <str>,
                "grid10_url":   <str>,
                "grid5_url":    <str>,
                "published":    <bool>,
                "width":        <int>,
                "height":       <int>,
                "format":       <str>,
                "created_at":   <ISO-8601 str>,
                "updated_at":   <ISO-8601 str>
            }
        }
    """

    def __init__(self, file_path: str = '.gridreveal/images.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, Dict] = self._load({})

    def find(self, image_id: str) -> Optional[Dict]:
        """Return the record for *image_id*, or ``None``."""
        return self.data.get(str(image_id))

    def all(self) -> List[Dict]:
        return list(self.data.values())

    def upsert(self, record: Dict) -> None:
        """Insert or replace *record* (keyed by its ``id``), then persist."""
        self.data[str(record['id'])] = record
        self.save()

    def delete(self, image_id: str) -> bool:
        """Remove the record for *image_id*.  Returns ``True`` if it existed."""
        key = str(image_id)
        if key not in self.data:
            return False
        del self.data[key]
        self.save()
        return True

    def save(self) -> None:
        self._save(self.data)
