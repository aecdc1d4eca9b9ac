"""Business logic for puzzle images: upload, edit, regenerate, delete."""
import datetime
import logging
import os
import uuid
from typing import Callable, Dict, Iterable, List, Optional

import scramble

from ..constants import CATEGORIES
from ..repositories.image_repository import ImageRepository
from ..repositories.media_repository import MediaRepository
from .tag_service import TagService


def _now() -> str:
    return datetime.datetime.now().isoformat()


def _text(value, label: str) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValueError(f'{label} must be text')
    return value.strip()


class ImageService:
    """Turns uploaded photos into the four stored renditions and manages the
    resulting image records.

    Renditions are written to :class:`MediaRepository` only after the
    scramble engine has produced all of them, and a failed write removes any
    blob already stored for that upload.  Grid URLs are write-once:
    :meth:`regenerate` stores fresh blobs and swaps the URLs.
    """

    def __init__(self, repository: ImageRepository, media: MediaRepository,
                 tags: TagService, output_format: str = scramble.DEFAULT_FORMAT,
                 quality: int = scramble.DEFAULT_QUALITY,
                 max_edge: int = scramble.MAX_EDGE,
                 fetch: Optional[Callable[[str], bytes]] = None) -> None:
        """
        Args:
            repository:    Image record store.
            media:         Blob store for renditions.
            tags:          Tag service for per-image tags.
            output_format: Encoding for every rendition (``WEBP`` or ``JPEG``).
            quality:       Encoder quality, 1-100.
            max_edge:      Longest edge after normalization.
            fetch:         Fallback for reading originals that live outside
                           *media* (``url -> bytes``).
        """
        self._repo = repository
        self._media = media
        self._tags = tags
        self.output_format = scramble.normalize_format(output_format)
        self.quality = quality
        self.max_edge = max_edge
        self._fetch = fetch
        self._log = logging.getLogger('gridreveal.service.images')

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_name(name: Optional[str]) -> str:
        name = _text(name, 'Image name')
        if not name:
            raise ValueError('Image name is required')
        if len(name) > 200:
            raise ValueError('Image name must be at most 200 characters')
        return name

    @staticmethod
    def _validate_category(category: Optional[str]) -> str:
        category = _text(category, 'Category')
        if category not in CATEGORIES:
            raise ValueError(f'Unknown category: {category!r}')
        return category

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _view(self, record: Dict) -> Dict:
        view = dict(record)
        view['tags'] = self._tags.get(record['id'])
        return view

    def get(self, image_id: str) -> Optional[Dict]:
        """Return the image record with its tags, or ``None``."""
        record = self._repo.find(image_id)
        return self._view(record) if record else None

    def list(self, category: Optional[str] = None, tag: Optional[str] = None,
             query: Optional[str] = None,
             published: Optional[bool] = None) -> List[Dict]:
        """Return image records matching every given filter, newest first.

        *query* is a case-insensitive substring match on the name.
        """
        records = self._repo.all()
        if category:
            records = [r for r in records if r.get('category') == category]
        if published is not None:
            records = [r for r in records if bool(r.get('published')) == published]
        if query:
            needle = query.strip().lower()
            records = [r for r in records if needle in r.get('name', '').lower()]
        if tag:
            tagged = set(self._tags.image_ids_with(tag))
            records = [r for r in records if r['id'] in tagged]
        records.sort(key=lambda r: r.get('created_at', ''), reverse=True)
        return [self._view(r) for r in records]

    def exists(self, image_id: str) -> bool:
        return self._repo.find(image_id) is not None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _store(self, processed: scramble.ProcessedImage, filename: str) -> Dict[str, str]:
        stem = os.path.splitext(os.path.basename(filename or 'image'))[0] or 'image'
        blob_name = f'{stem}.{processed.extension}'
        urls: Dict[str, str] = {}
        try:
            for folder, data in processed.renditions():
                urls[folder] = self._media.put(folder, blob_name, data)
        except Exception:
            for url in urls.values():
                self._media.delete(url)
            raise
        return urls

    def upload(self, data: bytes, filename: str, name: str, category: str,
               published: bool = False,
               tags: Optional[Iterable[str]] = None) -> Dict:
        """Process *data* into four renditions, store them, create a record.

        Raises:
            ValueError: On a missing name or unknown category.
            scramble.ScrambleError: If the image cannot be decoded, is too
                small for the grid, or cannot be encoded.
        """
        name = self._validate_name(name)
        category = self._validate_category(category)

        processed = scramble.process_image(
            data, fmt=self.output_format, quality=self.quality, max_edge=self.max_edge)
        urls = self._store(processed, filename)

        now = _now()
        record = {
            'id': uuid.uuid4().hex,
            'name': name,
            'category': category,
            'original_url': urls['original'],
            'grid15_url': urls['grid15'],
            'grid10_url': urls['grid10'],
            'grid5_url': urls['grid5'],
            'published': bool(published),
            'width': processed.width,
            'height': processed.height,
            'format': processed.format,
            'created_at': now,
            'updated_at': now,
        }
        self._repo.upsert(record)
        if tags:
            self._tags.set(record['id'], tags)
        self._log.info("Uploaded image %s (%s, %dx%d)", record['id'], name,
                       processed.width, processed.height)
        return self._view(record)

    def update(self, image_id: str, name: Optional[str] = None,
               category: Optional[str] = None, published: Optional[bool] = None,
               tags: Optional[Iterable[str]] = None) -> Optional[Dict]:
        """Edit metadata.  ``None`` leaves a field unchanged.

        Returns:
            The updated record, or ``None`` if *image_id* does not exist.

        Raises:
            ValueError: On an empty name or unknown category.
        """
        record = self._repo.find(image_id)
        if not record:
            return None
        record = dict(record)
        if name is not None:
            record['name'] = self._validate_name(name)
        if category is not None:
            record['category'] = self._validate_category(category)
        if published is not None:
            record['published'] = bool(published)
        record['updated_at'] = _now()
        self._repo.upsert(record)
        if tags is not None:
            self._tags.set(image_id, tags)
        return self._view(record)

    def set_published(self, image_id: str, published: bool) -> bool:
        return self.update(image_id, published=published) is not None

    def read_original(self, record: Dict) -> bytes:
        url = record['original_url']
        if self._media.owns(url) or not self._fetch:
            return self._media.read(url)
        return self._fetch(url)

    def regenerate(self, image_id: str) -> Optional[Dict]:
        """Re-run the scramble engine from the stored original.

        New grid blobs get new URLs; the previous grid blobs are removed
        once the record points at the new ones.
        """
        record = self._repo.find(image_id)
        if not record:
            return None
        source = scramble.normalize(scramble.decode(self.read_original(record)), self.max_edge)
        grids = {size: scramble.scramble(source, size, self.output_format, self.quality)
                 for size in scramble.GRID_SIZES}

        # stored names are <millis>_<hex>_<name>; keep only <name>
        stem = os.path.splitext(os.path.basename(record['original_url']))[0].split('_', 2)[-1]
        blob_name = f'{stem}.{scramble.extension_for(self.output_format)}'
        new_urls: Dict[str, str] = {}
        try:
            for size, data in grids.items():
                folder = f'grid{size}'
                new_urls[folder] = self._media.put(folder, blob_name, data)
        except Exception:
            for url in new_urls.values():
                self._media.delete(url)
            raise

        updated = dict(record)
        old_urls = [record[f'{folder}_url'] for folder in new_urls]
        for folder, url in new_urls.items():
            updated[f'{folder}_url'] = url
        updated['updated_at'] = _now()
        self._repo.upsert(updated)
        for url in old_urls:
            self._media.delete(url)
        self._log.info("Regenerated grids for image %s", image_id)
        return self._view(updated)

    def delete(self, image_id: str) -> bool:
        """Delete the record, its tags and every stored rendition."""
        record = self._repo.find(image_id)
        if not record:
            return False
        self._repo.delete(image_id)
        self._tags.clear(image_id)
        for key in ('original_url', 'grid15_url', 'grid10_url', 'grid5_url'):
            self._media.delete(record.get(key, ''))
        self._log.info("Deleted image %s", image_id)
        return True
