import os
import tempfile

import pytest

# Set test environment variables BEFORE importing the app
os.environ['AYURTRACE_DB_PATH'] = os.path.join(tempfile.gettempdir(), 'ayurtrace_test.db')
os.environ['LEDGER_DELAY_SECONDS'] = '0'

from ayurtrace.api import app as flask_app
from ayurtrace.models import init_db


@pytest.fixture
def app(tmp_path):
    """Flask app bound to a fresh database file"""
    db_path = str(tmp_path / 'test.db')
    flask_app.config.update({
        'TESTING': True,
        'DATABASE_PATH': db_path,
        'LEDGER_DELAY_SECONDS': 0,
    })
    init_db(db_path)
    yield flask_app


@pytest.fixture
def client(app):
    """Create a test client for the app"""
    return app.test_client()


@pytest.fixture
def zone(client):
    """Approved Ashwagandha zone around Bhopal"""
    resp = client.post('/api/zones', json={
        'id': 'zone-bhopal',
        'name': 'Bhopal Forest Division',
        'region': 'Madhya Pradesh',
        'coordinates': [
            {'lat': 23.0, 'lng': 77.0},
            {'lat': 23.0, 'lng': 78.0},
            {'lat': 24.0, 'lng': 78.0},
            {'lat': 24.0, 'lng': 77.0},
        ],
        'allowed_species': ['Ashwagandha'],
    })
    assert resp.status_code == 201
    return resp.get_json()['zone']


@pytest.fixture
def collection(client, zone):
    """A collection event recorded inside the zone"""
    resp = client.post('/api/collections', json={
        'species': 'Ashwagandha',
        'botanical_name': 'Withania somnifera',
        'quantity': 120,
        'coordinates': {'lat': 23.26, 'lng': 77.41},
        'collector_id': 'COL-001',
    })
    assert resp.status_code == 201
    return resp.get_json()['event']
