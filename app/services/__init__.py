"""Services package: expose all concrete services from one import."""
from .tag_service import TagService
from .image_service import ImageService
from .game_service import GameService
from .session_service import SessionService
from .session_log_service import SessionLogService
from .idempotency_service import IdempotencyService
from .export_service import ExportService

__all__ = [
    'TagService',
    'ImageService',
    'GameService',
    'SessionService',
    'SessionLogService',
    'IdempotencyService',
    'ExportService',
]
