"""
AyurTrace - REST API
Flask API behind the collector, processor, lab, manufacturer and government portals
"""

import logging
import math
import sqlite3
import time
import uuid
from datetime import datetime, timezone

from flask import Flask, request, jsonify
from flask_cors import CORS

from ayurtrace import config
from ayurtrace.blockchain import create_transaction, verify_transaction
from ayurtrace.geofence import GeofenceZone, GeoPoint, validate_harvest_location
from ayurtrace.models import (
    init_db, ApprovedZone, CollectionEvent, ProcessingStep, QualityTest,
    ManufacturingRecord, Provenance, supply_chain_overview
)
from ayurtrace.payloads import build_payload, to_dict
from ayurtrace.provenance import validate_supply_chain, create_provenance_chain
from ayurtrace.qr import QRPayloadError, decode_payload, generate_product_qr, scan_from_image
from ayurtrace.validators import validate_collection, validate_manufacturing, validate_test_result

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config.update(config.as_dict())
CORS(app)

# Initialize database
init_db(app.config['DATABASE_PATH'])


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def missing_fields(data, required):
    for field in required:
        if data.get(field) in (None, ''):
            return jsonify({'error': f'Missing required field: {field}'}), 400
    return None


def parse_timestamp(value):
    """Normalise an ISO 8601 timestamp to UTC, now when missing. Raises ValueError."""
    if value is None or value == '':
        return now_iso()
    if not isinstance(value, str):
        raise ValueError(value)

    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def read_timestamps(data, fields, optional=()):
    """
    Parse the request's timestamp fields in place.

    Missing `fields` default to now; missing `optional` fields stay unset.
    Returns a 400 response for the first one that does not parse.
    """
    for field in list(fields) + list(optional):
        if field in optional and data.get(field) in (None, ''):
            continue
        try:
            data[field] = parse_timestamp(data.get(field))
        except ValueError:
            return jsonify({'error': f'Invalid timestamp: {field}'}), 400
    return None


def optional_number(value):
    """float(value), None when missing. Raises ValueError for anything non-numeric."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(value)
    try:
        number = float(value)
    except TypeError:
        raise ValueError(value)
    if not math.isfinite(number):
        raise ValueError(value)
    return number


async def commit(entity_type, payload, previous_hash):
    """Hash a payload into a transaction chained to previous_hash"""
    return await create_transaction(
        entity_type, payload, previous_hash,
        delay=app.config['LEDGER_DELAY_SECONDS']
    )


# ============================================================
# APPROVED ZONE ENDPOINTS
# ============================================================

@app.route('/api/zones', methods=['GET'])
def get_zones():
    """Get all approved harvesting zones"""
    zones = ApprovedZone.get_all()
    return jsonify({
        'success': True,
        'count': len(zones),
        'zones': zones
    })


@app.route('/api/zones', methods=['POST'])
def create_zone():
    """Register an approved harvesting zone"""
    data = request.get_json(silent=True) or {}

    error = missing_fields(data, ['name', 'coordinates', 'allowed_species'])
    if error:
        return error

    try:
        zone = GeofenceZone.from_dict({'id': data.get('id') or str(uuid.uuid4()), **data})
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({'error': f'Invalid zone: {e}'}), 400

    if ApprovedZone.get(zone.id):
        return jsonify({'error': 'Zone already exists'}), 409

    return jsonify({
        'success': True,
        'message': 'Zone registered',
        'zone': ApprovedZone.create(zone, region=data.get('region'))
    }), 201


# ============================================================
# COLLECTOR PORTAL
# ============================================================

@app.route('/api/collections', methods=['POST'])
async def record_collection():
    """Record a herb collection inside an approved zone"""
    data = request.get_json(silent=True) or {}

    errors = validate_collection(data.get('species'), data.get('quantity'), data.get('coordinates'))
    if errors:
        return jsonify({'error': 'Validation failed', 'errors': errors}), 400

    try:
        point = GeoPoint.from_dict(data['coordinates'])
    except (KeyError, TypeError, ValueError):
        return jsonify({'error': 'Coordinates must contain lat and lng'}), 400

    error = read_timestamps(data, ['harvest_timestamp'])
    if error:
        return error

    harvest = validate_harvest_location(point, data['species'], ApprovedZone.load_zones())
    if not harvest.is_valid:
        return jsonify({'error': 'Harvest location rejected', 'errors': harvest.errors}), 422

    payload = to_dict(build_payload('collection', {
        **data,
        'quantity': float(data['quantity']),
        'botanical_name': data.get('botanical_name', ''),
        'coordinates': point.to_dict(),
        'zone_id': harvest.zone.id,
    }))

    with CollectionEvent.writer() as (conn, previous_hash):
        transaction = await commit('collection', payload, previous_hash)
        event_id = CollectionEvent.record(conn, payload, transaction,
                                          zone_id=harvest.zone.id, is_validated=True)

    return jsonify({
        'success': True,
        'message': 'Collection recorded',
        'event': CollectionEvent.get(event_id),
        'transaction': transaction.to_dict()
    }), 201


@app.route('/api/collections', methods=['GET'])
def get_collections():
    """Get all collection events"""
    events = CollectionEvent.get_all()
    return jsonify({
        'success': True,
        'count': len(events),
        'events': events
    })


# ============================================================
# PROCESSOR PORTAL
# ============================================================

@app.route('/api/processing-steps', methods=['POST'])
async def record_processing_step():
    """Record a processing step for a collected herb lot"""
    data = request.get_json(silent=True) or {}

    error = missing_fields(data, ['collection_event_id', 'step_type'])
    if error:
        return error

    if not CollectionEvent.get(data['collection_event_id']):
        return jsonify({'error': 'Collection event not found'}), 404

    error = read_timestamps(data, ['start_timestamp'], optional=['end_timestamp'])
    if error:
        return error

    payload = to_dict(build_payload('processing', data))

    with ProcessingStep.writer() as (conn, previous_hash):
        transaction = await commit('processing', payload, previous_hash)
        step_id = ProcessingStep.record(conn, payload, transaction)

    return jsonify({
        'success': True,
        'message': f"{payload['step_type']} step recorded",
        'step': ProcessingStep.get(step_id),
        'transaction': transaction.to_dict()
    }), 201


# ============================================================
# TESTING LAB PORTAL
# ============================================================

@app.route('/api/quality-tests', methods=['POST'])
async def record_quality_test():
    """Record a lab test against a collection or processing sample"""
    data = request.get_json(silent=True) or {}

    error = missing_fields(data, ['test_type', 'test_result'])
    if error:
        return error

    collection_event_id = data.get('collection_event_id')
    processing_step_id = data.get('processing_step_id')

    if collection_event_id:
        if not CollectionEvent.get(collection_event_id):
            return jsonify({'error': 'Collection event not found'}), 404
    elif processing_step_id:
        if not ProcessingStep.get(processing_step_id):
            return jsonify({'error': 'Processing step not found'}), 404
    else:
        return jsonify({'error': 'Missing required field: collection_event_id or processing_step_id'}), 400

    test_result = data['test_result']
    if not isinstance(test_result, dict) or 'value' not in test_result:
        return jsonify({'error': 'test_result must contain a value'}), 400

    try:
        value = optional_number(test_result['value'])
        threshold_min = optional_number(data.get('threshold_min'))
        threshold_max = optional_number(data.get('threshold_max'))
    except ValueError:
        return jsonify({'error': 'Test value and thresholds must be numeric'}), 400
    if value is None:
        return jsonify({'error': 'test_result must contain a value'}), 400

    error = read_timestamps(data, ['test_timestamp'])
    if error:
        return error

    passed = validate_test_result(value, threshold_min, threshold_max)

    payload = to_dict(build_payload('testing', {
        **data,
        'sample_id': collection_event_id or processing_step_id,
        'passed': passed,
        'threshold_min': threshold_min,
        'threshold_max': threshold_max,
        'certificate_number': f"CERT-{int(time.time() * 1000)}",
    }))

    with QualityTest.writer() as (conn, previous_hash):
        transaction = await commit('testing', payload, previous_hash)
        test_id = QualityTest.record(
            conn, payload, transaction,
            collection_event_id=collection_event_id,
            processing_step_id=processing_step_id
        )

    return jsonify({
        'success': True,
        'message': f"{payload['test_type']} test {'passed' if passed else 'failed'}",
        'test': QualityTest.get(test_id),
        'certificate_hash': transaction.hash,
        'transaction': transaction.to_dict()
    }), 201


# ============================================================
# MANUFACTURER PORTAL
# ============================================================

@app.route('/api/manufacturing', methods=['POST'])
async def record_manufacturing():
    """Record a manufactured batch"""
    data = request.get_json(silent=True) or {}

    errors = validate_manufacturing(
        data.get('product_name'),
        data.get('batch_code'),
        data.get('final_product_quantity'),
        data.get('composition_details')
    )
    if errors:
        return jsonify({'error': 'Validation failed', 'errors': errors}), 400

    if ManufacturingRecord.get_by_batch_code(data['batch_code']):
        return jsonify({'error': 'Batch code already exists'}), 409

    collection_ids = data.get('collection_event_ids') or []
    if len(CollectionEvent.get_many(collection_ids)) != len(set(collection_ids)):
        return jsonify({'error': 'Collection event not found'}), 404

    test_ids = data.get('test_result_ids') or []
    if len(QualityTest.get_many(test_ids)) != len(set(test_ids)):
        return jsonify({'error': 'Quality test not found'}), 404

    error = read_timestamps(data, ['manufacturing_date'])
    if error:
        return error

    payload = to_dict(build_payload('manufacturing', {
        **data,
        'product_type': data.get('product_type', 'capsule'),
        'final_product_quantity': float(data['final_product_quantity']),
        'test_result_ids': test_ids,
    }))

    try:
        with ManufacturingRecord.writer() as (conn, previous_hash):
            transaction = await commit('manufacturing', payload, previous_hash)
            record_id = ManufacturingRecord.record(conn, payload, transaction, collection_ids)
    except sqlite3.IntegrityError:
        # Same batch code committed by a concurrent request
        return jsonify({'error': 'Batch code already exists'}), 409

    return jsonify({
        'success': True,
        'message': f"Batch {payload['batch_code']} recorded",
        'record': ManufacturingRecord.get(record_id),
        'transaction': transaction.to_dict()
    }), 201


@app.route('/api/provenance', methods=['POST'])
def create_provenance():
    """Bundle a batch's supply chain under one Merkle root and issue its QR"""
    data = request.get_json(silent=True) or {}

    error = missing_fields(data, ['batch_code'])
    if error:
        return error

    manufacturing = ManufacturingRecord.get_by_batch_code(data['batch_code'])
    if not manufacturing:
        return jsonify({'error': 'Manufacturing record not found'}), 404

    if Provenance.get(data['batch_code']):
        return jsonify({'error': 'Provenance already created for batch'}), 409

    supply_chain = Provenance.gather(manufacturing)
    records = Provenance.build_records(supply_chain)

    validation = validate_supply_chain(records)
    root = create_provenance_chain(records)

    qr_base64 = generate_product_qr(
        product_id=manufacturing['id'],
        name=manufacturing['product_name'],
        product_type=manufacturing['product_type'],
        batch_ids=[manufacturing['batch_code']],
        packaging_date=now_iso(),
        verification_url=f"{app.config['VERIFY_BASE_URL']}/{manufacturing['id']}"
    )

    provenance = Provenance.create(
        manufacturing, supply_chain, root,
        is_finalized=validation.is_valid,
        qr_code=qr_base64
    )

    return jsonify({
        'success': True,
        'provenance': provenance,
        'validation': validation.to_dict(),
        'merkle_root': root,
        'qr_code_base64': qr_base64
    }), 201


# ============================================================
# CONSUMER / GOVERNMENT TRACKING
# ============================================================

@app.route('/api/trace/<batch_number>', methods=['GET'])
def trace_batch(batch_number):
    """Full supply chain of a batch with integrity checks"""
    trace = Provenance.trace(batch_number)
    if not trace:
        return jsonify({'error': 'Batch not found'}), 404

    records = trace['records']
    validation = validate_supply_chain(records)
    transactions_valid = all(verify_transaction(tx) for tx in trace['transactions'])
    merkle_valid = create_provenance_chain(records) == trace['provenance']['merkle_root']

    timeline = []
    for record in records:
        timeline.append({
            'stage': record.entity_type.value.title(),
            'entity_id': record.entity_id,
            'timestamp': record.timestamp,
            'location': record.location.to_dict() if record.location else None,
            'block_hash': record.block_hash
        })

    provenance = trace['provenance']
    return jsonify({
        'success': True,
        'batch_number': batch_number,
        'product_name': provenance['product_name'],
        'merkle_root': provenance['merkle_root'],
        'timeline': timeline,
        'chain_valid': validation.is_valid,
        'errors': validation.errors,
        'transactions_valid': transactions_valid,
        'merkle_valid': merkle_valid,
        'verified': validation.is_valid and transactions_valid and merkle_valid
    })


@app.route('/api/stats', methods=['GET'])
def get_stats():
    """Supply chain overview for the government portal"""
    return jsonify({
        'success': True,
        'stats': supply_chain_overview()
    })


# ============================================================
# QR ENDPOINTS
# ============================================================

@app.route('/api/qr/decode', methods=['POST'])
def decode_qr():
    """Decode scanned QR text"""
    data = request.get_json(silent=True) or {}

    error = missing_fields(data, ['data'])
    if error:
        return error

    try:
        payload = decode_payload(data['data'])
    except QRPayloadError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({'success': True, 'payload': payload.to_dict()})


@app.route('/api/qr/scan', methods=['POST'])
def scan_qr():
    """Decode a QR code from an uploaded image"""
    image = request.files.get('image')
    if image is None:
        return jsonify({'error': 'Missing required field: image'}), 400

    try:
        payload = scan_from_image(image.read())
    except QRPayloadError as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({'success': True, 'payload': payload.to_dict()})


# ============================================================
# HEALTH CHECK
# ============================================================

@app.route('/api/health', methods=['GET'])
def health():
    """Health check"""
    return jsonify({
        'status': 'ok',
        'service': 'AyurTrace API',
        'version': '1.0.0',
        'timestamp': now_iso()
    })


# ============================================================
# RUN SERVER
# ============================================================

if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    port = config.PORT
    print("\n" + "=" * 50)
    print("🌿  AYURTRACE API")
    print("=" * 50)
    print(f"API running on: http://localhost:{port}")
    print(f"Health check: http://localhost:{port}/api/health")
    print("=" * 50 + "\n")

    app.run(host='0.0.0.0', port=port, debug=True)
