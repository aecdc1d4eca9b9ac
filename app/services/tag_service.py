"""Business logic for free-form image tags."""
from typing import Dict, Iterable, List

from ..repositories.tag_repository import TagRepository


def _clean(tag: str) -> str:
    return ' '.join(str(tag).split()).lower()


class TagService:
    """Manages per-image tag labels, delegating persistence to
    :class:`~app.repositories.tag_repository.TagRepository`.

    Rules
    -----
    * Tags are trimmed, inner whitespace collapsed, and lowercased.
    * Adding a tag that already exists is a no-op (returns ``False``).
    * Removing the last tag for an image cleans up the entry entirely.
    """

    def __init__(self, repository: TagRepository) -> None:
        self._repo = repository

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add(self, image_id: str, tag: str) -> bool:
        """Add *tag* to *image_id*.

        Returns:
            ``True`` if added; ``False`` if it was already present or the tag
            is empty after cleaning.
        """
        tag = _clean(tag)
        if not tag:
            return False
        current = self._repo.find(image_id)
        if tag in current:
            return False
        current.append(tag)
        self._repo.replace(image_id, current)
        return True

    def remove(self, image_id: str, tag: str) -> bool:
        """Remove *tag* from *image_id*.  Returns ``True`` if it was there."""
        tag = _clean(tag)
        current = self._repo.find(image_id)
        if tag not in current:
            return False
        current.remove(tag)
        self._repo.replace(image_id, current)
        return True

    def set(self, image_id: str, tags: Iterable[str]) -> List[str]:
        """Replace all tags on *image_id*; returns the cleaned list."""
        cleaned: List[str] = []
        for tag in tags or []:
            tag = _clean(tag)
            if tag and tag not in cleaned:
                cleaned.append(tag)
        self._repo.replace(image_id, cleaned)
        return cleaned

    def get(self, image_id: str) -> List[str]:
        return self._repo.find(image_id)

    def clear(self, image_id: str) -> None:
        self._repo.replace(image_id, [])

    def catalogue(self) -> Dict[str, int]:
        """Return ``{tag: number_of_images}`` sorted by tag name."""
        return dict(sorted(self._repo.counts().items()))

    def image_ids_with(self, tag: str) -> List[str]:
        return self._repo.image_ids_with(_clean(tag))
