#!/usr/bin/env python3
"""
GridReveal GUI - JSON web API for the image-guessing game
Serves the image catalog, game builder and live reveal sessions over Flask.
"""

import logging
import argparse
import base64
import threading
import os
import sys
from datetime import datetime, timezone
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request, Response, send_from_directory

import database
import gridreveal
import scramble
from app.constants import CATEGORIES, GAME_STATUSES
from app.services import IdempotencyService, SessionLogService

load_dotenv()

# Initialize logging early so database module logs are captured
log_level = os.getenv('GRIDREVEAL_LOG_LEVEL', 'INFO')
gridreveal_logger = gridreveal.setup_logging(log_level)
gui_logger = logging.getLogger('gridreveal.gui')
gui_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
try:
    os.makedirs('logs', exist_ok=True)
    fh = logging.FileHandler('logs/gridreveal_gui.log')
    fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
    fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    gui_logger.addHandler(fh)
except OSError:
    gui_logger.warning('Could not create log file handler')

DB_AVAILABLE = bool(database.init_db())
if DB_AVAILABLE:
    gui_logger.info('Database initialized successfully')
else:
    gui_logger.warning('Database unavailable, session log and upload keys disabled')

_session_log_service = SessionLogService(database)
_idempotency_service = IdempotencyService(database)

app = Flask(__name__)

# Global catalog instance
catalog: Optional[gridreveal.GridReveal] = None
catalog_lock = threading.Lock()
config_path = 'config.json'

SESSION_CLOCK_INTERVAL_SECONDS = 1
SESSION_PRUNE_EVERY_TICKS = 60


def _log_session(game_session, completed: bool) -> None:
    """Append a finished or abandoned play session to the session log."""
    if not DB_AVAILABLE:
        return
    db = database.SessionLocal()
    try:
        _session_log_service.record(db, game_session, completed=completed)
    finally:
        db.close()


def initialize_catalog(path: Optional[str] = None, config: Optional[Dict] = None):
    """(Re)build the global catalog from a config file or a config dict."""
    global catalog
    with catalog_lock:
        try:
            catalog = gridreveal.GridReveal(config_path=path or config_path, config=config,
                                            session_log=_log_session)
            return True, f"Loaded {len(catalog.images.list())} images"
        except (OSError, ValueError) as e:
            gui_logger.error('Could not initialize catalog: %s', e)
            return False, str(e)


def get_catalog() -> gridreveal.GridReveal:
    if catalog is None:
        ok, message = initialize_catalog()
        if not ok:
            raise RuntimeError(message)
    return catalog


class SessionClock:
    """Background clock that ticks every live session once per second."""

    def __init__(self, interval: float = SESSION_CLOCK_INTERVAL_SECONDS):
        self.running = False
        self.thread = None
        self.interval = interval
        self.ticks = 0

    def tick_once(self) -> int:
        reveal_app = get_catalog()
        applied = reveal_app.sessions.tick_all()
        self.ticks += 1
        if self.ticks % SESSION_PRUNE_EVERY_TICKS == 0:
            reveal_app.sessions.prune()
        return applied

    def run(self):
        """Background task that runs until stopped"""
        while self.running:
            try:
                self.tick_once()
                threading.Event().wait(self.interval)
            except Exception as e:
                gui_logger.error(f'Error in session clock: {e}')
                threading.Event().wait(self.interval)

    def start(self):
        """Start the session clock"""
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self.run, daemon=True)
        self.thread.start()
        gui_logger.info('Session clock started')

    def stop(self):
        """Stop the session clock"""
        self.running = False
        if self.thread:
            self.thread.join(timeout=5)
        gui_logger.info('Session clock stopped')


session_clock = SessionClock()


# ===========================================================================================
# Helpers
# ===========================================================================================

def _error(message: str, code: int):
    return jsonify({'error': message}), code


def _scramble_error(e: scramble.ScrambleError):
    """Map an engine error onto an HTTP response."""
    if isinstance(e, scramble.EncodeError):
        return _error(str(e), 422)
    return _error(str(e), 400)


def _as_bool(value) -> Optional[bool]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _split_tags(value):
    if value is None:
        return None
    if isinstance(value, list):
        return value
    return [t for t in str(value).split(',') if t.strip()]


def _json_body() -> Dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _session_or_404(session_id: str):
    game_session = get_catalog().sessions.get(session_id)
    if game_session is None:
        return None, _error('Session not found', 404)
    return game_session, None


def _replayed_image(reveal_app, db, key: Optional[str]) -> Optional[Dict]:
    """Return the stored image for an already-used upload key, if any."""
    if db is None:
        return None
    existing_id = _idempotency_service.lookup(db, key)
    existing = reveal_app.images.get(existing_id) if existing_id else None
    if existing:
        gui_logger.info('Replayed upload for key %s -> %s', key, existing_id)
    return existing


# ===========================================================================================
# Status
# ===========================================================================================

@app.route('/api/status')
def api_status():
    """Get application status"""
    reveal_app = get_catalog()
    return jsonify({
        'ready': True,
        'database': DB_AVAILABLE,
        'total_images': len(reveal_app.images.list()),
        'total_games': len(reveal_app.games.list()),
        'active_sessions': len(reveal_app.sessions.active()),
        'clock_running': session_clock.running,
        'time': datetime.now(timezone.utc).isoformat(),
    })


@app.route('/api/categories')
def api_categories():
    """List the fixed image/game categories"""
    return jsonify({'categories': list(CATEGORIES), 'game_statuses': list(GAME_STATUSES)})


# ===========================================================================================
# Images
# ===========================================================================================

@app.route('/api/images', methods=['GET'])
def api_list_images():
    """List images, optionally filtered by category, tag, name or published flag"""
    reveal_app = get_catalog()
    images = reveal_app.images.list(
        category=request.args.get('category') or None,
        tag=request.args.get('tag') or None,
        query=request.args.get('q') or None,
        published=_as_bool(request.args.get('published')),
    )
    return jsonify({'images': images, 'tags': reveal_app.tags.catalogue()})


@app.route('/api/images', methods=['POST'])
def api_upload_image():
    """Upload a photo and store its original and grid renditions.

    Multipart fields: ``image`` (file), ``name``, ``category``, optional
    ``published`` and comma-separated ``tags``.  A repeated
    ``Idempotency-Key`` header returns the image created the first time.
    """
    upload = request.files.get('image')
    if upload is None:
        return _error('No image provided', 400)
    try:
        key = IdempotencyService.clean_key(request.headers.get('Idempotency-Key'))
    except ValueError as e:
        return _error(str(e), 400)

    reveal_app = get_catalog()
    db = database.SessionLocal() if DB_AVAILABLE and key else None
    try:
        # Lookup, upload and key record happen under one lock so two
        # requests with the same key cannot both create an image.
        with catalog_lock:
            existing = _replayed_image(reveal_app, db, key)
            if existing:
                return jsonify({'image': existing, 'replayed': True}), 200

            image = reveal_app.images.upload(
                upload.read(),
                filename=upload.filename or 'image',
                name=request.form.get('name'),
                category=request.form.get('category'),
                published=bool(_as_bool(request.form.get('published'))),
                tags=_split_tags(request.form.get('tags')),
            )
            if db is not None and not _idempotency_service.remember(db, key, image['id']):
                # Another process claimed the key first; keep its image.
                existing = _replayed_image(reveal_app, db, key)
                if existing:
                    reveal_app.delete_image(image['id'])
                    return jsonify({'image': existing, 'replayed': True}), 200
        return jsonify({'image': image, 'replayed': False}), 201
    except scramble.ScrambleError as e:
        return _scramble_error(e)
    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        gui_logger.error('Upload failed: %s', e)
        return _error('Failed to process image', 500)
    finally:
        if db is not None:
            db.close()


@app.route('/api/images/<image_id>', methods=['GET'])
def api_get_image(image_id):
    image = get_catalog().images.get(image_id)
    if not image:
        return _error('Image not found', 404)
    return jsonify({'image': image})


@app.route('/api/images/<image_id>', methods=['PUT'])
def api_update_image(image_id):
    """Edit name, category, published flag or tags"""
    data = _json_body()
    reveal_app = get_catalog()
    try:
        with catalog_lock:
            image = reveal_app.images.update(
                image_id,
                name=data.get('name'),
                category=data.get('category'),
                published=_as_bool(data.get('published')),
                tags=_split_tags(data.get('tags')),
            )
    except ValueError as e:
        return _error(str(e), 400)
    if image is None:
        return _error('Image not found', 404)
    return jsonify({'image': image})


@app.route('/api/images/<image_id>', methods=['DELETE'])
def api_delete_image(image_id):
    """Delete an image, its renditions, and its rounds in every game"""
    reveal_app = get_catalog()
    with catalog_lock:
        deleted = reveal_app.delete_image(image_id)
    if not deleted:
        return _error('Image not found', 404)
    if DB_AVAILABLE:
        db = database.SessionLocal()
        try:
            _idempotency_service.forget_image(db, image_id)
        finally:
            db.close()
    return jsonify({'success': True})


@app.route('/api/images/<image_id>/regenerate', methods=['POST'])
def api_regenerate_image(image_id):
    """Re-scramble the grid renditions from the stored original"""
    reveal_app = get_catalog()
    try:
        with catalog_lock:
            image = reveal_app.images.regenerate(image_id)
    except scramble.ScrambleError as e:
        return _scramble_error(e)
    except (OSError, gridreveal.FetchError) as e:
        gui_logger.error('Regenerate failed for %s: %s', image_id, e)
        return _error('Could not read the original image', 500)
    if image is None:
        return _error('Image not found', 404)
    return jsonify({'image': image})


@app.route('/api/images/<image_id>/tags', methods=['POST', 'DELETE'])
def api_image_tags(image_id):
    """Add (POST) or remove (DELETE) a tag"""
    reveal_app = get_catalog()
    if not reveal_app.images.exists(image_id):
        return _error('Image not found', 404)
    tag = _json_body().get('tag')
    if not isinstance(tag, str) or not tag.strip():
        return _error('Tag is required', 400)
    with catalog_lock:
        if request.method == 'POST':
            reveal_app.tags.add(image_id, tag)
        else:
            reveal_app.tags.remove(image_id, tag)
    return jsonify({'tags': reveal_app.tags.get(image_id)})


@app.route('/api/images/<image_id>/sessions', methods=['POST'])
def api_image_session(image_id):
    """Start a one-round practice session for a single image"""
    data = _json_body()
    try:
        game_session = get_catalog().sessions.create_for_image(
            image_id, player=data.get('player'), settings=data.get('settings'))
    except ValueError as e:
        return _error(str(e), 400)
    if game_session is None:
        return _error('Image not found', 404)
    return jsonify({'session': game_session.to_dict()}), 201


# ===========================================================================================
# Stateless image tools
# ===========================================================================================

@app.route('/api/process-image', methods=['POST'])
def api_process_image():
    """Scramble an uploaded image without storing anything.

    Returns the four renditions base64-encoded.
    """
    upload = request.files.get('image')
    if upload is None:
        return _error('No image provided', 400)
    reveal_app = get_catalog()
    fmt = request.form.get('format') or reveal_app.config['output_format']
    try:
        processed = scramble.process_image(
            upload.read(), fmt=fmt, quality=int(reveal_app.config['quality']),
            max_edge=int(reveal_app.config['max_edge']))
    except scramble.ScrambleError as e:
        return _scramble_error(e)
    result = {name: base64.b64encode(blob).decode('ascii')
              for name, blob in processed.renditions()}
    result.update({
        'width': processed.width,
        'height': processed.height,
        'format': processed.format,
        'content_type': processed.content_type,
    })
    return jsonify(result)


@app.route('/api/convert-image', methods=['GET'])
def api_convert_image():
    """Re-encode an image URL as a downloadable JPEG"""
    url = request.args.get('url')
    if not url:
        return _error('URL parameter is required', 400)
    reveal_app = get_catalog()
    try:
        data = reveal_app.fetch(url)
        jpeg = scramble.convert(data, 'JPEG', int(reveal_app.config['quality']))
    except scramble.ScrambleError as e:
        return _scramble_error(e)
    except (gridreveal.FetchError, OSError, ValueError) as e:
        gui_logger.warning('Convert failed for %s: %s', url, e)
        return _error('Failed to convert image', 502)
    return Response(jpeg, mimetype='image/jpeg', headers={
        'Content-Disposition': 'attachment',
        'Cache-Control': 'public, max-age=31536000',
    })


@app.route('/api/export', methods=['POST'])
def api_export():
    """Download selected images as a ZIP with a CSV index"""
    image_ids = _json_body().get('image_ids') or []
    if not isinstance(image_ids, list) or not image_ids:
        return _error('image_ids must be a non-empty list', 400)
    reveal_app = get_catalog()
    images = []
    for image_id in image_ids:
        image = reveal_app.images.get(image_id)
        if not image:
            return _error(f'Image not found: {image_id}', 404)
        images.append(image)
    try:
        archive = reveal_app.export.export_zip(images)
    except scramble.ScrambleError as e:
        return _scramble_error(e)
    except (gridreveal.FetchError, OSError) as e:
        gui_logger.error('Export failed: %s', e)
        return _error('Failed to export images', 500)
    filename = f"gridreveal-export-{datetime.now().strftime('%Y%m%d-%H%M%S')}.zip"
    return Response(archive, mimetype='application/zip', headers={
        'Content-Disposition': f'attachment; filename="{filename}"',
    })


# ===========================================================================================
# Games
# ===========================================================================================

@app.route('/api/games', methods=['GET'])
def api_list_games():
    games = get_catalog().games.list(
        status=request.args.get('status') or None,
        category=request.args.get('category') or None,
    )
    return jsonify({'games': games})


@app.route('/api/games', methods=['POST'])
def api_create_game():
    """Create a game from an ordered list of image ids"""
    data = _json_body()
    reveal_app = get_catalog()
    try:
        with catalog_lock:
            game = reveal_app.games.create(
                title=data.get('title'),
                category=data.get('category'),
                image_ids=data.get('image_ids') or [],
                description=data.get('description') or '',
                randomize_images=bool(_as_bool(data.get('randomize_images'))),
                status=data.get('status') or 'draft',
                settings=data.get('settings'),
            )
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify({'game': game}), 201


@app.route('/api/games/<game_id>', methods=['GET'])
def api_get_game(game_id):
    reveal_app = get_catalog()
    game = reveal_app.games.get(game_id)
    if not game:
        return _error('Game not found', 404)
    stats = None
    if DB_AVAILABLE:
        db = database.SessionLocal()
        try:
            stats = _session_log_service.stats(db, game_id)
        finally:
            db.close()
    return jsonify({'game': game, 'stats': stats})


@app.route('/api/games/<game_id>', methods=['PUT'])
def api_update_game(game_id):
    data = _json_body()
    reveal_app = get_catalog()
    try:
        with catalog_lock:
            game = reveal_app.games.update(
                game_id,
                title=data.get('title'),
                category=data.get('category'),
                description=data.get('description'),
                randomize_images=_as_bool(data.get('randomize_images')),
                status=data.get('status'),
                settings=data.get('settings'),
                image_ids=data.get('image_ids'),
            )
    except ValueError as e:
        return _error(str(e), 400)
    if game is None:
        return _error('Game not found', 404)
    return jsonify({'game': game})


@app.route('/api/games/<game_id>', methods=['DELETE'])
def api_delete_game(game_id):
    reveal_app = get_catalog()
    with catalog_lock:
        deleted = reveal_app.games.delete(game_id)
    if not deleted:
        return _error('Game not found', 404)
    return jsonify({'success': True})


@app.route('/api/games/<game_id>/sessions', methods=['GET'])
def api_game_history(game_id):
    """Recent logged sessions for a game"""
    if not DB_AVAILABLE:
        return jsonify({'sessions': []})
    try:
        limit = int(request.args.get('limit', 50))
    except ValueError:
        return _error('limit must be an integer', 400)
    db = database.SessionLocal()
    try:
        return jsonify({'sessions': _session_log_service.recent(db, game_id=game_id, limit=limit)})
    finally:
        db.close()


@app.route('/api/games/<game_id>/sessions', methods=['POST'])
def api_game_session(game_id):
    """Start a new play session for a game"""
    data = _json_body()
    try:
        game_session = get_catalog().sessions.create_for_game(game_id, player=data.get('player'))
    except ValueError as e:
        return _error(str(e), 400)
    if game_session is None:
        return _error('Game not found', 404)
    return jsonify({'session': game_session.to_dict()}), 201


# ===========================================================================================
# Live sessions
# ===========================================================================================

@app.route('/api/sessions/<session_id>', methods=['GET'])
def api_get_session(session_id):
    game_session, error = _session_or_404(session_id)
    if error:
        return error
    return jsonify({'session': game_session.to_dict()})


@app.route('/api/sessions/<session_id>', methods=['DELETE'])
def api_abandon_session(session_id):
    if not get_catalog().sessions.abandon(session_id):
        return _error('Session not found', 404)
    return jsonify({'success': True})


@app.route('/api/sessions/<session_id>/start', methods=['POST'])
def api_start_session(session_id):
    game_session, error = _session_or_404(session_id)
    if error:
        return error
    started = game_session.start()
    return jsonify({'started': started, 'session': game_session.to_dict()})


@app.route('/api/sessions/<session_id>/tick', methods=['POST'])
def api_tick_session(session_id):
    """Advance a session's timer by one second (for clients without the clock)"""
    game_session, error = _session_or_404(session_id)
    if error:
        return error
    ticked = game_session.tick()
    return jsonify({'ticked': ticked, 'session': game_session.to_dict()})


@app.route('/api/sessions/<session_id>/guess', methods=['POST'])
def api_guess(session_id):
    game_session, error = _session_or_404(session_id)
    if error:
        return error
    result = game_session.submit_guess(_json_body().get('guess'))
    return jsonify({'result': result, 'session': game_session.to_dict()})


@app.route('/api/sessions/<session_id>/restart', methods=['POST'])
def api_restart_session(session_id):
    game_session, error = _session_or_404(session_id)
    if error:
        return error
    game_session.restart()
    return jsonify({'session': game_session.to_dict()})


# ===========================================================================================
# Media
# ===========================================================================================

@app.route('/media/<path:key>')
def media(key):
    """Serve a stored rendition"""
    reveal_app = get_catalog()
    return send_from_directory(os.path.abspath(reveal_app.media.root_dir), key,
                               max_age=31536000)


def main():
    """Main entry point for GUI"""
    global config_path
    parser = argparse.ArgumentParser(description='GridReveal Web API')
    parser.add_argument('--config', default='config.json', help='Path to config file')
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind')
    parser.add_argument('--port', type=int, default=5000, help='Port to listen on')
    parser.add_argument('--no-clock', action='store_true',
                        help='Do not tick sessions in the background; clients call /tick')
    args = parser.parse_args()

    config_path = args.config
    ok, message = initialize_catalog(config_path)
    if not ok:
        print(f"Could not start: {message}")
        return 1
    gui_logger.info(message)

    if not args.no_clock:
        session_clock.start()

    print("\n" + "=" * 60)
    print("GridReveal API is starting...")
    print("=" * 60)
    print(f"\n  http://{args.host}:{args.port}/api/status")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(host=args.host, port=args.port, debug=False, threaded=True)
    finally:
        session_clock.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
