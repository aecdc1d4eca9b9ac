"""Repository for image tag labels ({image_id: [tag, ...]})."""
from typing import Dict, List
from .base import BaseRepository


class TagRepository(BaseRepository):
    """Keeps each image's tag list in one JSON file.

    Schema::

        { "<image_id>": ["<tag1>", "<tag2>", ...] }

    An image without tags has no entry.
    """

    def __init__(self, file_path: str = '.gridreveal/tags.json') -> None:
        super().__init__(file_path)
        self.data: Dict[str, List[str]] = self._load({})

    def find(self, image_id: str) -> List[str]:
        return list(self.data.get(str(image_id), []))

    def replace(self, image_id: str, tags: List[str]) -> None:
        """Store *tags* for *image_id*; an empty list drops the entry."""
        key = str(image_id)
        if tags:
            self.data[key] = list(tags)
        elif self.data.pop(key, None) is None:
            return
        self._save(self.data)

    def counts(self) -> Dict[str, int]:
        """Number of images carrying each tag."""
        counts: Dict[str, int] = {}
        for tags in self.data.values():
            for tag in tags:
                counts[tag] = counts.get(tag, 0) + 1
        return counts

    def image_ids_with(self, tag: str) -> List[str]:
        return [image_id for image_id, tags in self.data.items() if tag in tags]
