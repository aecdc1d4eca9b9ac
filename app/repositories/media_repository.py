"""Write-once blob storage for image renditions on the local filesystem."""
import logging
import os
import time
import uuid
from typing import Optional

from werkzeug.utils import secure_filename

from .base import atomic_write_bytes


class MediaRepository:
    """Stores encoded renditions under *root_dir* and hands back public URLs.

    Keys look like ``grid15/1718000000000_1a2b3c4d_photo.webp``.  A key is
    never overwritten: regenerating a rendition stores a new blob with a new
    URL.  *base_url* is the prefix the web layer serves *root_dir* under.
    """

    def __init__(self, root_dir: str = '.gridreveal/media',
                 base_url: str = '/media') -> None:
        self.root_dir = os.path.abspath(root_dir)
        self.base_url = base_url.rstrip('/')
        self._log = logging.getLogger('gridreveal.repository.MediaRepository')

    # ------------------------------------------------------------------
    # Keys and URLs
    # ------------------------------------------------------------------

    def url_for(self, key: str) -> str:
        return f'{self.base_url}/{key}'

    def key_for(self, url: str) -> Optional[str]:
        """Return the storage key behind *url*, or ``None`` for foreign URLs."""
        prefix = self.base_url + '/'
        if isinstance(url, str) and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def owns(self, url: str) -> bool:
        return self.key_for(url) is not None

    def path_for(self, key: str) -> str:
        """Resolve *key* to a path inside *root_dir*.

        Raises:
            ValueError: If *key* escapes the storage root.
        """
        path = os.path.abspath(os.path.join(self.root_dir, key))
        if os.path.commonpath([path, self.root_dir]) != self.root_dir or path == self.root_dir:
            raise ValueError(f'Invalid media key: {key!r}')
        return path

    # ------------------------------------------------------------------
    # Blob operations
    # ------------------------------------------------------------------

    def put(self, folder: str, filename: str, data: bytes) -> str:
        """Store *data* under *folder* and return its public URL."""
        safe_name = secure_filename(filename) or 'image'
        key = f'{secure_filename(folder)}/{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{safe_name}'
        path = self.path_for(key)
        if os.path.exists(path):
            raise FileExistsError(f'Media key already exists: {key}')
        atomic_write_bytes(path, data)
        self._log.debug("Stored %s (%d bytes)", key, len(data))
        return self.url_for(key)

    def read(self, url_or_key: str) -> bytes:
        """Return the bytes stored for a URL or a bare key.

        Raises:
            FileNotFoundError: If nothing is stored there.
        """
        key = self.key_for(url_or_key) or url_or_key
        with open(self.path_for(key), 'rb') as fh:
            return fh.read()

    def delete(self, url: str) -> bool:
        """Remove the blob behind *url*.  Returns ``True`` if a file was removed."""
        key = self.key_for(url)
        if not key:
            return False
        try:
            os.unlink(self.path_for(key))
            return True
        except (OSError, ValueError) as exc:
            self._log.warning("Could not delete %s: %s", url, exc)
            return False
