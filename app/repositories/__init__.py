"""Repository package: expose all concrete repositories from one import."""
from .image_repository import ImageRepository
from .game_repository import GameRepository
from .tag_repository import TagRepository
from .media_repository import MediaRepository

__all__ = [
    'ImageRepository',
    'GameRepository',
    'TagRepository',
    'MediaRepository',
]
