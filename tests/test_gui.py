#!/usr/bin/env python3
"""
Tests for the Flask JSON API in gridreveal_gui.py.

Run with:
    python -m pytest tests/test_gui.py
"""
import base64
import io
import json
import os
import shutil
import sys
import tempfile
import threading
import time
import unittest
import zipfile
from unittest.mock import patch

from PIL import Image

os.environ.setdefault('DATABASE_URL', 'sqlite://')
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import database
import gridreveal
import gridreveal_gui


def png_file(size=(60, 40), colour='red', name='batman.png'):
    buf = io.BytesIO()
    Image.new('RGB', size, colour).save(buf, format='PNG')
    buf.seek(0)
    return buf, name


class GuiTestCase(unittest.TestCase):
    """Points the API at a temp catalog and a private in-memory database."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        config = gridreveal.load_config(None)
        config.update(data_dir=os.path.join(self.tmp, 'data'),
                      media_dir=os.path.join(self.tmp, 'data', 'media'),
                      media_base_url='/media', output_format='PNG')
        ok, message = gridreveal_gui.initialize_catalog(config=config)
        self.assertTrue(ok, message)

        self.engine = create_engine('sqlite://', connect_args={'check_same_thread': False},
                                    poolclass=StaticPool)
        database.init_db(bind=self.engine)
        self._patches = [
            patch.object(database, 'SessionLocal', sessionmaker(bind=self.engine)),
            patch.object(gridreveal_gui, 'DB_AVAILABLE', True),
        ]
        for p in self._patches:
            p.start()

        gridreveal_gui.app.config['TESTING'] = True
        self.client = gridreveal_gui.app.test_client()

    def tearDown(self):
        for p in reversed(self._patches):
            p.stop()
        self.engine.dispose()
        gridreveal_gui.catalog = None
        shutil.rmtree(self.tmp, ignore_errors=True)

    # helpers ---------------------------------------------------------------

    def upload(self, name='Batman', category='Guess the Movie', headers=None, **fields):
        data = {'image': png_file(), 'name': name, 'category': category}
        data.update(fields)
        return self.client.post('/api/images', data=data, headers=headers or {},
                                content_type='multipart/form-data')

    def upload_image(self, name='Batman', **fields):
        resp = self.upload(name=name, **fields)
        self.assertEqual(resp.status_code, 201, resp.data)
        return json.loads(resp.data)['image']

    def create_game(self, image_ids, **fields):
        body = {'title': 'Heroes', 'category': 'Guess the Movie', 'image_ids': image_ids}
        body.update(fields)
        resp = self.client.post('/api/games', json=body)
        self.assertEqual(resp.status_code, 201, resp.data)
        return json.loads(resp.data)['game']


# ===========================================================================
# Catalog endpoints
# ===========================================================================

class TestStatus(GuiTestCase):

    def test_status(self):
        resp = self.client.get('/api/status')
        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.data)
        self.assertTrue(data['ready'])
        self.assertEqual(data['total_images'], 0)

    def test_categories(self):
        data = json.loads(self.client.get('/api/categories').data)
        self.assertEqual(len(data['categories']), 12)
        self.assertIn('Guess the Landmark', data['categories'])


class TestImageEndpoints(GuiTestCase):

    def test_upload(self):
        image = self.upload_image(tags='DC, hero', published='true')
        self.assertEqual(image['name'], 'Batman')
        self.assertTrue(image['published'])
        self.assertEqual(image['tags'], ['dc', 'hero'])
        self.assertTrue(image['grid15_url'].startswith('/media/grid15/'))

    def test_upload_requires_file(self):
        resp = self.client.post('/api/images', data={'name': 'Batman'},
                                content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 400)

    def test_upload_validation_error(self):
        self.assertEqual(self.upload(category='Guess the Weather').status_code, 400)

    def test_upload_undecodable(self):
        data = {'image': (io.BytesIO(b'not an image'), 'a.png'),
                'name': 'Batman', 'category': 'Guess the Movie'}
        resp = self.client.post('/api/images', data=data, content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 400)
        self.assertIn('error', json.loads(resp.data))

    def test_upload_too_small(self):
        data = {'image': png_file(size=(8, 8)), 'name': 'Batman', 'category': 'Guess the Movie'}
        resp = self.client.post('/api/images', data=data, content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 400)

    def test_idempotent_upload(self):
        first = self.upload(headers={'Idempotency-Key': 'upload-1'})
        second = self.upload(headers={'Idempotency-Key': 'upload-1'})
        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(json.loads(second.data)['replayed'])
        self.assertEqual(json.loads(first.data)['image']['id'],
                         json.loads(second.data)['image']['id'])
        images = json.loads(self.client.get('/api/images').data)['images']
        self.assertEqual(len(images), 1)

    def test_concurrent_uploads_with_same_key_store_one_image(self):
        results = []

        def post():
            client = gridreveal_gui.app.test_client()
            resp = client.post('/api/images',
                               data={'image': png_file(), 'name': 'Batman',
                                     'category': 'Guess the Movie'},
                               headers={'Idempotency-Key': 'same-key'},
                               content_type='multipart/form-data')
            results.append((resp.status_code, json.loads(resp.data)))

        # Both requests queue on the catalog lock before either can proceed.
        with gridreveal_gui.catalog_lock:
            threads = [threading.Thread(target=post) for _ in range(2)]
            for t in threads:
                t.start()
            time.sleep(0.2)
        for t in threads:
            t.join(timeout=10)

        self.assertEqual(sorted(code for code, _ in results), [200, 201])
        ids = {body['image']['id'] for _, body in results}
        self.assertEqual(len(ids), 1)
        images = json.loads(self.client.get('/api/images').data)['images']
        self.assertEqual(len(images), 1)

    def test_upload_keeps_image_of_key_claimed_elsewhere(self):
        first = self.upload_image('Batman')
        db = database.SessionLocal()
        try:
            database.record_upload(db, 'shared', first['id'])
        finally:
            db.close()

        # Lookup misses, then the record collides with the stored key.
        with patch.object(gridreveal_gui._idempotency_service, 'lookup',
                          side_effect=[None, first['id']]):
            resp = self.upload('Batman', headers={'Idempotency-Key': 'shared'})

        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.data)
        self.assertTrue(data['replayed'])
        self.assertEqual(data['image']['id'], first['id'])
        images = json.loads(self.client.get('/api/images').data)['images']
        self.assertEqual([i['id'] for i in images], [first['id']])

    def test_oversized_idempotency_key(self):
        resp = self.upload(headers={'Idempotency-Key': 'k' * 300})
        self.assertEqual(resp.status_code, 400)

    def test_list_filters(self):
        self.upload_image('Batman', tags='dc')
        self.upload_image('Eiffel Tower', category='Guess the Landmark')
        resp = self.client.get('/api/images', query_string={'category': 'Guess the Landmark'})
        data = json.loads(resp.data)
        self.assertEqual([i['name'] for i in data['images']], ['Eiffel Tower'])
        data = json.loads(self.client.get('/api/images?tag=dc').data)
        self.assertEqual([i['name'] for i in data['images']], ['Batman'])
        self.assertEqual(data['tags'], {'dc': 1})
        data = json.loads(self.client.get('/api/images?q=tower&published=false').data)
        self.assertEqual(len(data['images']), 1)

    def test_get_update_delete(self):
        image = self.upload_image()
        self.assertEqual(self.client.get(f"/api/images/{image['id']}").status_code, 200)
        resp = self.client.put(f"/api/images/{image['id']}", json={'name': 'The Batman'})
        self.assertEqual(json.loads(resp.data)['image']['name'], 'The Batman')
        self.assertEqual(self.client.put(f"/api/images/{image['id']}",
                                         json={'category': 'nope'}).status_code, 400)
        self.assertEqual(self.client.delete(f"/api/images/{image['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/images/{image['id']}").status_code, 404)
        self.assertEqual(self.client.delete(f"/api/images/{image['id']}").status_code, 404)
        self.assertEqual(self.client.put('/api/images/missing', json={'name': 'x'}).status_code, 404)

    def test_delete_forgets_idempotency_key(self):
        first = json.loads(self.upload(headers={'Idempotency-Key': 'k1'}).data)['image']
        self.client.delete(f"/api/images/{first['id']}")
        again = self.upload(headers={'Idempotency-Key': 'k1'})
        self.assertEqual(again.status_code, 201)
        self.assertNotEqual(json.loads(again.data)['image']['id'], first['id'])

    def test_regenerate(self):
        image = self.upload_image()
        resp = self.client.post(f"/api/images/{image['id']}/regenerate")
        self.assertEqual(resp.status_code, 200)
        regenerated = json.loads(resp.data)['image']
        self.assertNotEqual(regenerated['grid10_url'], image['grid10_url'])
        self.assertEqual(self.client.post('/api/images/missing/regenerate').status_code, 404)

    def test_tags(self):
        image = self.upload_image()
        resp = self.client.post(f"/api/images/{image['id']}/tags", json={'tag': 'Noir'})
        self.assertEqual(json.loads(resp.data)['tags'], ['noir'])
        resp = self.client.delete(f"/api/images/{image['id']}/tags", json={'tag': 'noir'})
        self.assertEqual(json.loads(resp.data)['tags'], [])
        self.assertEqual(self.client.post(f"/api/images/{image['id']}/tags",
                                          json={}).status_code, 400)
        self.assertEqual(self.client.post(f"/api/images/{image['id']}/tags",
                                          json={'tag': 5}).status_code, 400)
        self.assertEqual(self.client.post('/api/images/missing/tags',
                                          json={'tag': 'x'}).status_code, 404)

    def test_media_is_served(self):
        image = self.upload_image()
        resp = self.client.get(image['grid5_url'])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Image.open(io.BytesIO(resp.data)).format, 'PNG')
        resp.close()
        self.assertEqual(self.client.get('/media/grid5/missing.png').status_code, 404)


class TestImageTools(GuiTestCase):

    def test_process_image(self):
        resp = self.client.post('/api/process-image',
                                data={'image': png_file(size=(103, 77)), 'format': 'png'},
                                content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 200)
        data = json.loads(resp.data)
        self.assertEqual((data['width'], data['height']), (103, 77))
        grid10 = Image.open(io.BytesIO(base64.b64decode(data['grid10'])))
        self.assertEqual(grid10.size, (100, 70))
        for key in ('original', 'grid15', 'grid5'):
            self.assertIn(key, data)
        # nothing is stored
        self.assertEqual(json.loads(self.client.get('/api/images').data)['images'], [])

    def test_process_image_errors(self):
        resp = self.client.post('/api/process-image', data={},
                                content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post('/api/process-image',
                                data={'image': png_file(), 'format': 'nope'},
                                content_type='multipart/form-data')
        self.assertEqual(resp.status_code, 422)

    def test_convert_image(self):
        image = self.upload_image()
        resp = self.client.get('/api/convert-image', query_string={'url': image['grid15_url']})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.mimetype, 'image/jpeg')
        self.assertEqual(resp.headers['Content-Disposition'], 'attachment')
        self.assertEqual(Image.open(io.BytesIO(resp.data)).format, 'JPEG')

    def test_convert_image_errors(self):
        self.assertEqual(self.client.get('/api/convert-image').status_code, 400)
        with patch('gridreveal.requests.get',
                   side_effect=gridreveal.requests.ConnectionError('down')):
            resp = self.client.get('/api/convert-image',
                                   query_string={'url': 'https://cdn.example.com/a.png'})
        self.assertEqual(resp.status_code, 502)

    def test_export(self):
        a = self.upload_image('Batman')
        b = self.upload_image('Joker')
        resp = self.client.post('/api/export', json={'image_ids': [a['id'], b['id']]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.mimetype, 'application/zip')
        archive = zipfile.ZipFile(io.BytesIO(resp.data))
        self.assertIn('images.csv', archive.namelist())
        self.assertIn(f"grid5/002_Joker_{b['id']}.jpg", archive.namelist())

    def test_export_errors(self):
        self.assertEqual(self.client.post('/api/export', json={}).status_code, 400)
        self.assertEqual(self.client.post('/api/export',
                                          json={'image_ids': ['missing']}).status_code, 404)


# ===========================================================================
# Games and sessions
# ===========================================================================

class TestGameEndpoints(GuiTestCase):

    def test_crud(self):
        image = self.upload_image()
        game = self.create_game([image['id']], settings={'duration15x15': 12})
        self.assertEqual(game['settings']['duration15x15'], 12)
        resp = self.client.put(f"/api/games/{game['id']}", json={'status': 'published'})
        self.assertEqual(json.loads(resp.data)['game']['status'], 'published')
        listed = json.loads(self.client.get('/api/games?status=published').data)['games']
        self.assertEqual([g['id'] for g in listed], [game['id']])
        self.assertEqual(self.client.delete(f"/api/games/{game['id']}").status_code, 200)
        self.assertEqual(self.client.get(f"/api/games/{game['id']}").status_code, 404)

    def test_create_validation(self):
        resp = self.client.post('/api/games', json={'title': 'Empty',
                                                    'category': 'Guess the Movie',
                                                    'image_ids': []})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post('/api/games', json={'title': 'Bad', 'category': 'Guess the Movie',
                                                    'image_ids': ['missing']})
        self.assertEqual(resp.status_code, 400)
        image = self.upload_image()
        for bad in ({'settings': 5}, {'title': 5}, {'image_ids': image['id']}):
            body = {'title': 'Heroes', 'category': 'Guess the Movie', 'image_ids': [image['id']]}
            body.update(bad)
            with self.subTest(bad=bad):
                self.assertEqual(self.client.post('/api/games', json=body).status_code, 400)
        self.assertEqual(self.client.post('/api/games', json=[1, 2]).status_code, 400)

    def test_deleting_image_drops_round(self):
        a = self.upload_image('Batman')
        b = self.upload_image('Joker')
        game = self.create_game([a['id'], b['id']])
        self.client.delete(f"/api/images/{a['id']}")
        game = json.loads(self.client.get(f"/api/games/{game['id']}").data)['game']
        self.assertEqual(game['rounds'], [{'image_id': b['id'], 'sequence_order': 0}])


class TestSessionEndpoints(GuiTestCase):

    FAST = {'duration15x15': 2, 'duration10x10': 1, 'duration5x5': 1, 'durationAnswer': 1}

    def _new_session(self, **game_fields):
        image = self.upload_image('Batman')
        game = self.create_game([image['id']], settings=self.FAST, **game_fields)
        resp = self.client.post(f"/api/games/{game['id']}/sessions", json={'player': 'ada'})
        self.assertEqual(resp.status_code, 201)
        return game, json.loads(resp.data)['session']

    def test_play_through(self):
        game, session = self._new_session()
        sid = session['session_id']
        self.assertEqual(session['status'], 'waiting')
        self.assertIsNone(session['answer'])

        data = json.loads(self.client.post(f'/api/sessions/{sid}/start').data)
        self.assertTrue(data['started'])
        self.assertEqual(data['session']['phase'], 'grid15')

        data = json.loads(self.client.post(f'/api/sessions/{sid}/tick').data)
        self.assertEqual(data['session']['time_left'], 1)

        data = json.loads(self.client.post(f'/api/sessions/{sid}/guess',
                                           json={'guess': 'Superman'}).data)
        self.assertFalse(data['result']['correct'])
        data = json.loads(self.client.post(f'/api/sessions/{sid}/guess',
                                           json={'guess': 'batman'}).data)
        self.assertTrue(data['result']['correct'])
        self.assertEqual(data['session']['phase'], 'answer')
        self.assertEqual(data['session']['answer'], 'Batman')

        data = json.loads(self.client.post(f'/api/sessions/{sid}/tick').data)
        self.assertEqual(data['session']['status'], 'completed')
        self.assertEqual(data['session']['score'], 1)

        history = json.loads(self.client.get(f"/api/games/{game['id']}/sessions").data)
        self.assertEqual(len(history['sessions']), 1)
        self.assertEqual(history['sessions'][0]['player'], 'ada')
        self.assertTrue(history['sessions'][0]['completed'])
        stats = json.loads(self.client.get(f"/api/games/{game['id']}").data)['stats']
        self.assertEqual(stats, {'plays': 1, 'completed': 1, 'average_score': 1.0})

    def test_restart_and_abandon(self):
        _, session = self._new_session()
        sid = session['session_id']
        self.client.post(f'/api/sessions/{sid}/start')
        self.client.post(f'/api/sessions/{sid}/tick')
        data = json.loads(self.client.post(f'/api/sessions/{sid}/restart').data)
        self.assertEqual(data['session']['status'], 'waiting')
        self.assertEqual(data['session']['time_left'], 2)
        self.assertEqual(self.client.delete(f'/api/sessions/{sid}').status_code, 200)
        self.assertEqual(self.client.get(f'/api/sessions/{sid}').status_code, 404)

    def test_unknown_session(self):
        for path in ('start', 'tick', 'guess', 'restart'):
            self.assertEqual(self.client.post(f'/api/sessions/nope/{path}').status_code, 404)
        self.assertEqual(self.client.delete('/api/sessions/nope').status_code, 404)
        self.assertEqual(self.client.post('/api/games/nope/sessions').status_code, 404)

    def test_single_image_session(self):
        image = self.upload_image('Batman')
        resp = self.client.post(f"/api/images/{image['id']}/sessions",
                                json={'settings': {'duration15x15': 4}})
        self.assertEqual(resp.status_code, 201)
        session = json.loads(resp.data)['session']
        self.assertEqual(session['total_rounds'], 1)
        self.assertEqual(session['time_left'], 4)
        self.assertEqual(session['image_url'], image['grid15_url'])
        bad = self.client.post(f"/api/images/{image['id']}/sessions",
                               json={'settings': {'duration15x15': 0}})
        self.assertEqual(bad.status_code, 400)
        bad = self.client.post(f"/api/images/{image['id']}/sessions", json={'settings': 5})
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(self.client.post('/api/images/nope/sessions').status_code, 404)

    def test_session_clock_ticks_playing_sessions(self):
        _, session = self._new_session()
        sid = session['session_id']
        self.client.post(f'/api/sessions/{sid}/start')
        clock = gridreveal_gui.SessionClock()
        self.assertEqual(clock.tick_once(), 1)
        data = json.loads(self.client.get(f'/api/sessions/{sid}').data)
        self.assertEqual(data['session']['time_left'], 1)


if __name__ == '__main__':
    unittest.main()
