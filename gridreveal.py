#!/usr/bin/env python3
"""
GridReveal - image-guessing game toolkit
Scrambles photos into 15x15, 10x10 and 5x5 grid puzzles and runs the timed
reveal game that plays them back.
"""

import json
import logging
import os
import sys
import argparse
from typing import Dict, Optional

import requests
from colorama import init, Fore, Style

import reveal
import scramble
from app.repositories import GameRepository, ImageRepository, MediaRepository, TagRepository
from app.services import (
    ExportService, GameService, ImageService, SessionService, TagService,
)

# Initialize colorama for cross-platform colored terminal output
init(autoreset=True)

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(level: str = 'WARNING') -> logging.Logger:
    """Configure the root GridReveal logger.

    Args:
        level: Log level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to WARNING so normal use is quiet.

    Returns:
        Configured logger instance.
    """
    numeric = getattr(logging, str(level).upper(), logging.WARNING)
    logger = logging.getLogger('gridreveal')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('[%(levelname)s] %(name)s: %(message)s'))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


# Module-level logger used throughout gridreveal.py
logger = setup_logging()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict = {
    'log_level': 'WARNING',
    'data_dir': '.gridreveal',
    'media_dir': None,            # defaults to <data_dir>/media
    'media_base_url': '/media',
    'output_format': scramble.DEFAULT_FORMAT,
    'quality': scramble.DEFAULT_QUALITY,
    'max_edge': scramble.MAX_EDGE,
    'fetch_timeout_seconds': 15,
}

# env var -> (config key, converter)
_ENV_OVERRIDES = {
    'GRIDREVEAL_LOG_LEVEL': ('log_level', str),
    'GRIDREVEAL_DATA_DIR': ('data_dir', str),
    'GRIDREVEAL_MEDIA_DIR': ('media_dir', str),
    'GRIDREVEAL_MEDIA_URL': ('media_base_url', str),
    'GRIDREVEAL_OUTPUT_FORMAT': ('output_format', str),
    'GRIDREVEAL_QUALITY': ('quality', int),
    'GRIDREVEAL_MAX_EDGE': ('max_edge', int),
    'GRIDREVEAL_FETCH_TIMEOUT': ('fetch_timeout_seconds', float),
}


def load_config(config_path: Optional[str] = 'config.json') -> Dict:
    """Load configuration from *config_path* and apply environment overrides.

    A missing or unreadable file is not an error; defaults are used.
    Environment variables win over the file.

    Raises:
        ValueError: If a numeric environment override cannot be parsed.
    """
    config = dict(DEFAULT_CONFIG)
    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                config.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read config file %s: %s", config_path, e)

    for env_name, (key, convert) in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            try:
                config[key] = convert(value)
            except ValueError:
                raise ValueError(f"{env_name} must be a {convert.__name__}, got {value!r}")

    if not config.get('media_dir'):
        config['media_dir'] = os.path.join(config['data_dir'], 'media')
    config['output_format'] = scramble.normalize_format(config['output_format'])
    return config


# ---------------------------------------------------------------------------
# Image I/O
# ---------------------------------------------------------------------------

class FetchError(Exception):
    """An image URL could not be downloaded."""


def fetch_bytes(url: str, timeout: float = 15) -> bytes:
    """Download *url* and return the response body.

    Raises:
        FetchError: On any network error or non-2xx response.
    """
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        return resp.content
    except requests.RequestException as e:
        logging.getLogger('gridreveal.fetch').warning("Fetch failed (%s): %s", url, e)
        raise FetchError(f"Could not fetch {url}: {e}") from e


def read_source(path_or_url: str, timeout: float = 15) -> bytes:
    """Read image bytes from a local path or an http(s) URL."""
    if path_or_url.lower().startswith(('http://', 'https://')):
        return fetch_bytes(path_or_url, timeout=timeout)
    with open(path_or_url, 'rb') as f:
        return f.read()


# ---------------------------------------------------------------------------
# Integration point
# ---------------------------------------------------------------------------

class GridReveal:
    """Wires repositories and services together from one configuration."""

    def __init__(self, config_path: Optional[str] = 'config.json',
                 config: Optional[Dict] = None, session_log=None):
        """
        Args:
            config_path: JSON config file; ignored when *config* is given.
            config:      Already-loaded configuration dict.
            session_log: ``(session, completed) -> None`` sink handed to the
                         session service.
        """
        self._log = logging.getLogger('gridreveal.app')
        self.config = config if config is not None else load_config(config_path)
        setup_logging(self.config.get('log_level', 'WARNING'))

        data_dir = self.config['data_dir']
        os.makedirs(data_dir, exist_ok=True)
        self.fetch_timeout = float(self.config.get('fetch_timeout_seconds', 15))

        self.image_repository = ImageRepository(os.path.join(data_dir, 'images.json'))
        self.game_repository = GameRepository(os.path.join(data_dir, 'games.json'))
        self.tag_repository = TagRepository(os.path.join(data_dir, 'tags.json'))
        self.media = MediaRepository(self.config['media_dir'], self.config['media_base_url'])

        self.tags = TagService(self.tag_repository)
        self.images = ImageService(
            self.image_repository, self.media, self.tags,
            output_format=self.config['output_format'],
            quality=int(self.config['quality']),
            max_edge=int(self.config['max_edge']),
            fetch=self.fetch,
        )
        self.games = GameService(self.game_repository, self.image_repository)
        self.sessions = SessionService(self.games, self.images, session_log=session_log)
        self.export = ExportService(self.fetch, quality=int(self.config['quality']))
        self._log.debug("GridReveal ready (data_dir=%s)", data_dir)

    def fetch(self, url: str) -> bytes:
        """Return bytes for *url*: local media is read from disk, anything
        else goes over HTTP."""
        if self.media.owns(url):
            return self.media.read(url)
        return fetch_bytes(url, timeout=self.fetch_timeout)

    def delete_image(self, image_id: str) -> bool:
        """Delete an image and drop it from every game that used it."""
        if not self.images.delete(image_id):
            return False
        changed = self.games.remove_image(image_id)
        if changed:
            self._log.info("Removed image %s from %d game(s)", image_id, changed)
        return True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _cmd_process(args) -> int:
    data = read_source(args.image)
    processed = scramble.process_image(data, fmt=args.format, quality=args.quality,
                                       max_edge=args.max_edge)
    os.makedirs(args.outdir, exist_ok=True)
    for folder, blob in processed.renditions():
        path = os.path.join(args.outdir, f'{folder}.{processed.extension}')
        with open(path, 'wb') as f:
            f.write(blob)
        print(f"{Fore.GREEN}Wrote {path} {Fore.WHITE}({len(blob)} bytes)")
    print(f"{Fore.CYAN}Normalized size: {processed.width}x{processed.height}")
    return 0


def _cmd_scramble(args) -> int:
    data = read_source(args.image)
    out = scramble.scramble_bytes(data, args.grid, fmt=args.format, quality=args.quality)
    with open(args.output, 'wb') as f:
        f.write(out)
    print(f"{Fore.GREEN}Wrote {args.output} {Fore.WHITE}({len(out)} bytes)")
    return 0


def _cmd_check(args) -> int:
    verdict = reveal.check_guess(args.guess, args.answer)
    if verdict['correct']:
        print(f"{Fore.GREEN}{Style.BRIGHT}Correct!")
        return 0
    hints = {
        'empty': 'Invalid guess, try again!',
        'too_few_words': 'Try guessing more words!',
        'too_short': 'Guess is too short.',
        'mismatch': 'Incorrect, try again!',
    }
    print(f"{Fore.RED}{hints.get(verdict['reason'], 'Incorrect')}")
    return 1


def _cmd_images(args) -> int:
    catalog = GridReveal(args.config)
    images = catalog.images.list(category=args.category)
    if not images:
        print(f"{Fore.YELLOW}No images yet.")
    for image in images:
        state = f"{Fore.GREEN}published" if image.get('published') else f"{Fore.YELLOW}draft"
        print(f"{Fore.CYAN}{image['id']}  {Fore.WHITE}{image['name']}  "
              f"({image['category']})  {state}")
    return 0


def _cmd_games(args) -> int:
    catalog = GridReveal(args.config)
    games = catalog.games.list(status=args.status)
    if not games:
        print(f"{Fore.YELLOW}No games yet.")
    for game in games:
        print(f"{Fore.CYAN}{game['id']}  {Fore.WHITE}{game['title']}  "
              f"({game['category']}, {len(game['rounds'])} rounds, {game['status']})")
    return 0


def main(argv=None) -> int:
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description='GridReveal - grid-scramble image puzzles',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python3 gridreveal.py process photo.jpg --outdir out/     # all four renditions
  python3 gridreveal.py scramble photo.jpg --grid 10 -o p.webp
  python3 gridreveal.py check "The Dark Knight" "Dark Knight"
  python3 gridreveal.py images --category "Guess the Movie"
        """
    )
    parser.add_argument('--config', '-c', default='config.json',
                        help='Path to config file (default: config.json)')
    parser.add_argument('--log-level', default=None,
                        help='Override log level (DEBUG, INFO, WARNING, ...)')
    sub = parser.add_subparsers(dest='command')

    p = sub.add_parser('process', help='Build original + 15/10/5 grid renditions')
    p.add_argument('image', help='Image path or URL')
    p.add_argument('--outdir', '-o', default='.', help='Output directory')
    p.add_argument('--format', '-f', default=scramble.DEFAULT_FORMAT, help='webp or jpeg')
    p.add_argument('--quality', '-q', type=int, default=scramble.DEFAULT_QUALITY)
    p.add_argument('--max-edge', type=int, default=scramble.MAX_EDGE)
    p.set_defaults(func=_cmd_process)

    p = sub.add_parser('scramble', help='Scramble one image at one grid size')
    p.add_argument('image', help='Image path or URL')
    p.add_argument('--grid', '-g', type=int, default=10, help='Grid size (default: 10)')
    p.add_argument('--output', '-o', required=True, help='Output file')
    p.add_argument('--format', '-f', default=scramble.DEFAULT_FORMAT)
    p.add_argument('--quality', '-q', type=int, default=scramble.DEFAULT_QUALITY)
    p.set_defaults(func=_cmd_scramble)

    p = sub.add_parser('check', help='Check a guess against an answer')
    p.add_argument('guess')
    p.add_argument('answer')
    p.set_defaults(func=_cmd_check)

    p = sub.add_parser('images', help='List catalogued images')
    p.add_argument('--category', default=None)
    p.set_defaults(func=_cmd_images)

    p = sub.add_parser('games', help='List games')
    p.add_argument('--status', choices=('draft', 'published'), default=None)
    p.set_defaults(func=_cmd_games)

    args = parser.parse_args(argv)
    if args.log_level:
        setup_logging(args.log_level)
    if not getattr(args, 'func', None):
        parser.print_help()
        return 2

    try:
        return args.func(args)
    except (scramble.ScrambleError, FetchError, OSError) as e:
        print(f"{Fore.RED}Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
