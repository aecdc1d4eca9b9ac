"""Upload idempotency keys checked against persisted state."""
from typing import Optional


class IdempotencyService:
    """Lets upload clients retry safely.

    A client sends an ``Idempotency-Key`` with an upload; the first request
    records the key with the image it created, and any repeat returns that
    image instead of processing the upload again.  Keys live in the database
    so they survive restarts and are shared between server processes.

    All methods accept a *db* SQLAlchemy session as the first argument.
    """

    MAX_KEY_LENGTH = 255

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``find_upload``, ``record_upload`` and
                ``forget_image_uploads``).
        """
        self._db = db_module

    @classmethod
    def clean_key(cls, key: Optional[str]) -> Optional[str]:
        """Return the stripped key, or ``None`` if missing.

        Raises:
            ValueError: If the key is longer than :attr:`MAX_KEY_LENGTH`.
        """
        key = (key or '').strip()
        if not key:
            return None
        if len(key) > cls.MAX_KEY_LENGTH:
            raise ValueError('Idempotency-Key is too long')
        return key

    def lookup(self, db, key: Optional[str]) -> Optional[str]:
        """Return the image id already created for *key*, if any."""
        if not key:
            return None
        return self._db.find_upload(db, key)

    def remember(self, db, key: Optional[str], image_id: str) -> bool:
        if not key:
            return False
        return self._db.record_upload(db, key, image_id)

    def forget_image(self, db, image_id: str) -> int:
        return self._db.forget_image_uploads(db, image_id)
