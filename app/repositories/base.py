"""Repository base class used by all JSON-backed repositories."""
import json
import logging
import os
import tempfile
from typing import Any


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Write *data* to *path* via a sibling temp file and ``os.replace``."""
    dir_name = os.path.dirname(os.path.abspath(path))
    os.makedirs(dir_name, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dir_name, suffix='.tmp')
    try:
        with os.fdopen(fd, 'wb') as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class BaseRepository:
    """Provides JSON-backed persistence for a single catalog file.

    Sub-classes call :meth:`_load` to read initial data from disk and
    :meth:`_save` to persist it.  Every repository keeps an in-memory copy in
    ``self.data``; callers mutate that copy and then call ``save``.

    Writes go through a temp file and a rename so a crash never leaves a
    half-written catalog behind.
    """

    def __init__(self, file_path: str) -> None:
        self._path = file_path
        self._log = logging.getLogger(f'gridreveal.repository.{type(self).__name__}')

    @property
    def path(self) -> str:
        return self._path

    def _load(self, default: Any) -> Any:
        """Load JSON from *self._path*, returning *default* on missing/corrupt file."""
        if os.path.exists(self._path):
            try:
                with open(self._path, 'r', encoding='utf-8') as fh:
                    return json.load(fh)
            except (json.JSONDecodeError, IOError) as exc:
                self._log.warning("Could not load %s: %s", self._path, exc)
        return default

    def _save(self, data: Any) -> None:
        """Atomically write *data* as JSON to *self._path*."""
        payload = json.dumps(data, indent=2).encode('utf-8')
        atomic_write_bytes(self._path, payload)
