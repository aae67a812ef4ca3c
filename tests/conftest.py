"""
Pytest fixtures and test configuration
"""
import io
import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

import pytest
from bson import ObjectId
from PIL import Image

# Set testing environment variables BEFORE importing app modules
os.environ['TESTING'] = 'true'

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import app as app_module  # noqa: E402


def make_cursor(docs):
    """A stand-in for a pymongo cursor that supports chained sort/skip/limit."""
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.__iter__.return_value = iter(list(docs))
    return cursor


def png_bytes(width=400, height=200, fmt='PNG'):
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), color=(200, 120, 40)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def collections(monkeypatch):
    """Replace every pymongo collection the app touches with a MagicMock."""
    mocks = {
        'stores': MagicMock(name='stores'),
        'users': MagicMock(name='users'),
        'reviews': MagicMock(name='reviews'),
    }
    monkeypatch.setattr(app_module.Store, 'collection', mocks['stores'])
    monkeypatch.setattr(app_module.User, 'collection', mocks['users'])
    monkeypatch.setattr(app_module.Review, 'collection', mocks['reviews'])
    return mocks


@pytest.fixture
def flask_app(collections, tmp_path):
    flask_app = app_module.app
    flask_app.config.update(
        TESTING=True,
        SECRET_KEY='test-secret-key',
        UPLOAD_FOLDER=str(tmp_path / 'uploads'),
    )
    return flask_app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def user_doc():
    return {
        '_id': ObjectId(),
        'name': 'Wes',
        'email': 'wes@example.com',
        'email_lower': 'wes@example.com',
        'hearts': [],
        'created_at': datetime(2024, 1, 1),
    }


@pytest.fixture
def logged_in(client, collections, user_doc):
    """Log the test client in as ``user_doc``."""
    collections['users'].find_one.return_value = user_doc
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user_doc['_id'])
    return user_doc


@pytest.fixture
def store_doc(user_doc):
    return {
        '_id': ObjectId(),
        'name': 'Coffee Corner',
        'slug': 'coffee-corner',
        'description': 'Great espresso and pastries',
        'tags': ['Wifi', 'Open Late'],
        'location': {
            'type': 'Point',
            'coordinates': [-79.38, 43.65],
            'address': '1 Front St, Toronto',
        },
        'photo': None,
        'author': user_doc['_id'],
        'created': datetime(2024, 2, 1),
    }


def flashes(client):
    with client.session_transaction() as sess:
        return list(sess.get('_flashes', []))
