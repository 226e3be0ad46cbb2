"""
API tests - zones, the portal endpoints and batch tracing
"""

import io
import json

import pytest

from ayurtrace import models
from ayurtrace.qr import QRPayload

COMPOSITION = {'ashwagandha_root': {'percentage': 100, 'quantity_kg': 100}}


def record_processing(client, collection_id, step_type='drying'):
    resp = client.post('/api/processing-steps', json={
        'collection_event_id': collection_id,
        'step_type': step_type,
        'facility_id': 'FAC-01',
        'parameters': {'temperature_c': 45},
    })
    assert resp.status_code == 201
    return resp.get_json()['step']


def record_test(client, collection_id, value=2.1, threshold_max=5):
    resp = client.post('/api/quality-tests', json={
        'collection_event_id': collection_id,
        'test_type': 'moisture',
        'test_result': {'value': value, 'unit': '%'},
        'threshold_max': threshold_max,
        'lab_id': 'LAB-01',
    })
    assert resp.status_code == 201
    return resp.get_json()


def record_manufacturing(client, collection_ids, test_ids, batch_code='ASH-2024-001'):
    return client.post('/api/manufacturing', json={
        'batch_code': batch_code,
        'product_name': 'Ashwagandha Churna',
        'product_type': 'powder',
        'final_product_quantity': 100,
        'composition_details': COMPOSITION,
        'collection_event_ids': collection_ids,
        'test_result_ids': test_ids,
    })


@pytest.fixture
def batch(client, collection):
    """A batch with one collection, processing step and passed test"""
    record_processing(client, collection['id'])
    test = record_test(client, collection['id'])['test']
    resp = record_manufacturing(client, [collection['id']], [test['id']])
    assert resp.status_code == 201
    return resp.get_json()['record']


class TestHealthAndStats:
    def test_health(self, client):
        resp = client.get('/api/health')
        assert resp.status_code == 200
        assert resp.get_json()['service'] == 'AyurTrace API'

    def test_empty_stats(self, client):
        stats = client.get('/api/stats').get_json()['stats']
        assert stats['total_collections'] == 0
        assert stats['compliance_rate'] == 100.0


class TestZones:
    def test_list_zones(self, client, zone):
        data = client.get('/api/zones').get_json()
        assert data['count'] == 1
        assert data['zones'][0]['allowed_species'] == ['Ashwagandha']

    def test_negative_radius(self, client):
        resp = client.post('/api/zones', json={
            'name': 'Bad circle',
            'coordinates': [{'lat': 10, 'lng': 76}],
            'radius': -100,
            'allowed_species': ['Tulsi'],
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'].startswith('Invalid zone')

    def test_duplicate_zone(self, client, zone):
        resp = client.post('/api/zones', json={
            'id': zone['id'],
            'name': 'Again',
            'coordinates': zone['coordinates'],
            'allowed_species': ['Ashwagandha'],
        })
        assert resp.status_code == 409

    def test_missing_species(self, client):
        resp = client.post('/api/zones', json={'name': 'x', 'coordinates': []})
        assert resp.status_code == 400


class TestCollections:
    def test_collection_is_chained(self, client, collection):
        assert collection['is_validated'] == 1
        assert collection['zone_id'] == 'zone-bhopal'
        assert collection['previous_hash'] == ''

        resp = client.post('/api/collections', json={
            'species': 'Ashwagandha',
            'quantity': 80,
            'coordinates': {'lat': 23.5, 'lng': 77.5},
        })
        assert resp.status_code == 201
        second = resp.get_json()['event']
        assert second['previous_hash'] == collection['block_hash']

    def test_outside_zone_is_rejected(self, client, zone):
        resp = client.post('/api/collections', json={
            'species': 'Ashwagandha',
            'quantity': 10,
            'coordinates': {'lat': 12.97, 'lng': 77.59},
        })
        assert resp.status_code == 422
        assert 'No approved harvesting zone' in resp.get_json()['errors'][0]

    def test_out_of_season_is_rejected(self, client):
        # Two month window that never contains the current month
        from datetime import date
        month = date.today().month
        start = (month + 1) % 12 + 1
        client.post('/api/zones', json={
            'id': 'zone-seasonal',
            'name': 'Seasonal',
            'coordinates': [{'lat': 10, 'lng': 76}],
            'radius': 10000,
            'allowed_species': ['Tulsi'],
            'seasonal_restrictions': {'Tulsi': {'start_month': start, 'end_month': start % 12 + 1}},
        })
        resp = client.post('/api/collections', json={
            'species': 'Tulsi',
            'quantity': 10,
            'coordinates': {'lat': 10, 'lng': 76},
        })
        assert resp.status_code == 422
        assert resp.get_json()['errors'] == ['Harvesting Tulsi is not allowed in current season']

    def test_validation_errors(self, client, zone):
        resp = client.post('/api/collections', json={'quantity': 0})
        assert resp.status_code == 400
        assert resp.get_json()['errors'] == [
            'Species is required',
            'Quantity must be greater than 0',
            'Location data is required',
        ]

    def test_list_collections(self, client, collection):
        data = client.get('/api/collections').get_json()
        assert data['count'] == 1
        assert data['events'][0]['id'] == collection['id']


class TestProcessingAndTesting:
    def test_unknown_collection(self, client):
        resp = client.post('/api/processing-steps', json={
            'collection_event_id': 'nope', 'step_type': 'drying'
        })
        assert resp.status_code == 404

    def test_failed_threshold(self, client, collection):
        data = record_test(client, collection['id'], value=9.5, threshold_max=5)
        assert data['test']['passed'] == 0
        assert data['test']['certificate_number'].startswith('CERT-')
        assert data['certificate_hash'] == data['transaction']['hash']

        stats = client.get('/api/stats').get_json()['stats']
        assert stats['compliance_rate'] == 0.0

    def test_test_needs_sample(self, client):
        resp = client.post('/api/quality-tests', json={
            'test_type': 'moisture', 'test_result': {'value': 1}
        })
        assert resp.status_code == 400


class TestManufacturing:
    def test_composition_must_sum_to_100(self, client, collection):
        resp = client.post('/api/manufacturing', json={
            'batch_code': 'B-1',
            'product_name': 'Churna',
            'final_product_quantity': 10,
            'composition_details': {'a': {'percentage': 60}},
            'collection_event_ids': [collection['id']],
        })
        assert resp.status_code == 400
        assert 'Composition percentages must sum to 100%' in resp.get_json()['errors']

    def test_duplicate_batch_code(self, client, collection, batch):
        resp = record_manufacturing(client, [collection['id']], [], batch_code=batch['batch_code'])
        assert resp.status_code == 409

    def test_unknown_test_id(self, client, collection):
        resp = record_manufacturing(client, [collection['id']], ['missing'])
        assert resp.status_code == 404


class TestProvenanceAndTrace:
    def test_full_journey(self, client, batch):
        resp = client.post('/api/provenance', json={'batch_code': batch['batch_code']})
        assert resp.status_code == 201
        data = resp.get_json()
        assert data['validation'] == {'is_valid': True, 'errors': []}
        assert len(data['merkle_root']) == 64
        assert data['provenance']['is_finalized'] == 1

        trace = client.get(f"/api/trace/{batch['batch_code']}").get_json()
        assert [entry['stage'] for entry in trace['timeline']] == [
            'Collection', 'Processing', 'Testing', 'Manufacturing'
        ]
        assert trace['timeline'][0]['location'] == {'lat': 23.26, 'lng': 77.41}
        assert trace['merkle_root'] == data['merkle_root']
        assert trace['verified'] is True

        stats = client.get('/api/stats').get_json()['stats']
        assert stats['total_provenance'] == 1

    def test_provenance_only_once(self, client, batch):
        client.post('/api/provenance', json={'batch_code': batch['batch_code']})
        resp = client.post('/api/provenance', json={'batch_code': batch['batch_code']})
        assert resp.status_code == 409

    def test_unknown_batch(self, client):
        assert client.post('/api/provenance', json={'batch_code': 'nope'}).status_code == 404
        assert client.get('/api/trace/nope').status_code == 404

    def test_tampered_collection_is_detected(self, client, collection, batch):
        client.post('/api/provenance', json={'batch_code': batch['batch_code']})

        conn = models.get_db()
        row = conn.execute('SELECT payload FROM collection_events WHERE id = ?',
                           (collection['id'],)).fetchone()
        payload = json.loads(row['payload'])
        payload['quantity'] = 600.0
        conn.execute('UPDATE collection_events SET payload = ? WHERE id = ?',
                     (json.dumps(payload), collection['id']))
        conn.commit()
        conn.close()

        trace = client.get(f"/api/trace/{batch['batch_code']}").get_json()
        assert trace['transactions_valid'] is False
        assert trace['merkle_valid'] is False
        assert trace['verified'] is False


class TestQR:
    def test_decode(self, client):
        text = QRPayload(id='B-1', type='batch', data={'a': 1}, timestamp='t').to_json()
        resp = client.post('/api/qr/decode', json={'data': text})
        assert resp.status_code == 200
        assert resp.get_json()['payload']['id'] == 'B-1'

    def test_decode_invalid(self, client):
        resp = client.post('/api/qr/decode', json={'data': '{"id": 1}'})
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid QR code format'

    def test_scan_without_image(self, client):
        assert client.post('/api/qr/scan', data={}).status_code == 400


class TestBadInput:
    def collect(self, client, **fields):
        return client.post('/api/collections', json={
            'species': 'Ashwagandha',
            'quantity': 50,
            'coordinates': {'lat': 23.4, 'lng': 77.6},
            **fields,
        })

    def test_unparseable_harvest_timestamp(self, client, zone):
        resp = self.collect(client, harvest_timestamp='yesterday')
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid timestamp: harvest_timestamp'
        assert client.get('/api/collections').get_json()['count'] == 0

    def test_timestamps_are_normalised_to_utc(self, client, zone):
        resp = self.collect(client, harvest_timestamp='2024-03-01T15:30:00+05:30')
        assert resp.status_code == 201
        assert resp.get_json()['event']['harvest_timestamp'] == '2024-03-01T10:00:00+00:00'

    def test_unparseable_processing_and_test_timestamps(self, client, collection):
        resp = client.post('/api/processing-steps', json={
            'collection_event_id': collection['id'],
            'step_type': 'drying',
            'end_timestamp': 'tomorrow',
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid timestamp: end_timestamp'

        resp = client.post('/api/quality-tests', json={
            'collection_event_id': collection['id'],
            'test_type': 'moisture',
            'test_result': {'value': 2},
            'test_timestamp': 12345,
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid timestamp: test_timestamp'

    def test_unparseable_manufacturing_date(self, client, collection):
        resp = client.post('/api/manufacturing', json={
            'batch_code': 'B-1',
            'product_name': 'Churna',
            'final_product_quantity': 10,
            'composition_details': COMPOSITION,
            'collection_event_ids': [collection['id']],
            'manufacturing_date': 'last week',
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid timestamp: manufacturing_date'

    def test_numeric_string_quantity(self, client, zone):
        resp = self.collect(client, quantity='120')
        assert resp.status_code == 201
        assert resp.get_json()['event']['quantity'] == 120.0

    def test_non_numeric_quantity(self, client, zone):
        resp = self.collect(client, quantity='plenty')
        assert resp.status_code == 400
        assert resp.get_json()['errors'] == ['Quantity must be a number']

    def test_composition_as_list(self, client, collection):
        resp = client.post('/api/manufacturing', json={
            'batch_code': 'B-1',
            'product_name': 'Churna',
            'final_product_quantity': 10,
            'composition_details': [{'percentage': 100}],
            'collection_event_ids': [collection['id']],
        })
        assert resp.status_code == 400

    @pytest.mark.parametrize('fields', [
        {'test_result': {'value': 'high'}},
        {'test_result': {'value': 2}, 'threshold_max': 'ten'},
        {'test_result': {'value': 2}, 'threshold_min': [1]},
    ])
    def test_non_numeric_test_values(self, client, collection, fields):
        resp = client.post('/api/quality-tests', json={
            'collection_event_id': collection['id'],
            'test_type': 'moisture',
            **fields,
        })
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Test value and thresholds must be numeric'

    def test_scan_non_image_upload(self, client):
        resp = client.post('/api/qr/scan', data={
            'image': (io.BytesIO(b'not an image'), 'label.png'),
        }, content_type='multipart/form-data')
        assert resp.status_code == 400
        assert resp.get_json()['error'] == 'Invalid image file'

    def test_health_timestamp_is_utc(self, client):
        timestamp = client.get('/api/health').get_json()['timestamp']
        assert timestamp.endswith('+00:00')
