"""
AyurTrace - Database Models
Stores herb collections, processing, lab tests, manufacturing and
provenance bundles together with the hash chain that secures them
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ayurtrace import config
from ayurtrace.blockchain import Transaction
from ayurtrace.geofence import GeofenceZone, GeoPoint
from ayurtrace.provenance import EntityType, ProvenanceRecord

logger = logging.getLogger(__name__)

DATABASE_PATH = config.DATABASE_PATH

# Columns holding JSON documents
JSON_COLUMNS = {
    'coordinates', 'quality_metrics', 'parameters', 'environmental_conditions',
    'test_result', 'composition_details', 'test_result_ids', 'collection_event_ids',
    'allowed_species', 'seasonal_restrictions', 'payload', 'collection_events',
    'processing_steps', 'quality_tests',
}

# Hash chain columns shared by every event table
CHAIN_COLUMNS = '''
            transaction_id TEXT NOT NULL,
            payload TEXT NOT NULL,
            block_timestamp TEXT NOT NULL,
            nonce TEXT NOT NULL,
            previous_hash TEXT,
            block_hash TEXT NOT NULL,
            created_at TEXT NOT NULL
'''


def get_db():
    """Get database connection"""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str = None):
    """Initialize database tables"""
    global DATABASE_PATH
    if path:
        DATABASE_PATH = path

    conn = get_db()
    cursor = conn.cursor()

    # Approved harvesting zones
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS approved_zones (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            region TEXT,
            coordinates TEXT NOT NULL,
            radius REAL,
            allowed_species TEXT NOT NULL,
            seasonal_restrictions TEXT,
            created_at TEXT NOT NULL
        )
    ''')

    # Collection events - herbs gathered in the field
    cursor.execute(f'''
        CREATE TABLE IF NOT EXISTS collection_events (
            id TEXT PRIMARY KEY,
            species TEXT NOT NULL,
            botanical_name TEXT,
            quantity REAL NOT NULL,
            harvest_timestamp TEXT NOT NULL,
            coordinates TEXT NOT NULL,
            quality_metrics TEXT,
            collector_id TEXT,
            zone_id TEXT,
            is_validated INTEGER DEFAULT 0,
            {CHAIN_COLUMNS}
        )
    ''')

    # Processing steps (drying, grinding, ...)
    cursor.execute(f'''
        CREATE TABLE IF NOT EXISTS processing_steps (
            id TEXT PRIMARY KEY,
            collection_event_id TEXT NOT NULL,
            step_type TEXT NOT NULL,
            facility_id TEXT,
            operator_id TEXT,
            start_timestamp TEXT NOT NULL,
            end_timestamp TEXT,
            parameters TEXT,
            environmental_conditions TEXT,
            {CHAIN_COLUMNS},
            FOREIGN KEY (collection_event_id) REFERENCES collection_events(id)
        )
    ''')

    # Lab quality tests
    cursor.execute(f'''
        CREATE TABLE IF NOT EXISTS quality_tests (
            id TEXT PRIMARY KEY,
            sample_id TEXT NOT NULL,
            collection_event_id TEXT,
            processing_step_id TEXT,
            test_type TEXT NOT NULL,
            test_result TEXT NOT NULL,
            threshold_min REAL,
            threshold_max REAL,
            passed INTEGER NOT NULL,
            test_timestamp TEXT NOT NULL,
            lab_id TEXT,
            certificate_number TEXT,
            {CHAIN_COLUMNS}
        )
    ''')

    # Manufacturing records
    cursor.execute(f'''
        CREATE TABLE IF NOT EXISTS manufacturing_records (
            id TEXT PRIMARY KEY,
            batch_code TEXT NOT NULL UNIQUE,
            product_name TEXT NOT NULL,
            product_type TEXT NOT NULL,
            composition_details TEXT NOT NULL,
            collection_event_ids TEXT NOT NULL,
            test_result_ids TEXT NOT NULL,
            final_product_quantity REAL NOT NULL,
            total_herb_quantity_used_kg REAL,
            manufacturing_date TEXT NOT NULL,
            {CHAIN_COLUMNS}
        )
    ''')

    # Provenance bundles - one per finished batch
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS provenance (
            id TEXT PRIMARY KEY,
            batch_number TEXT NOT NULL UNIQUE,
            product_name TEXT NOT NULL,
            manufacturing_record_id TEXT NOT NULL,
            collection_events TEXT NOT NULL,
            processing_steps TEXT NOT NULL,
            quality_tests TEXT NOT NULL,
            merkle_root TEXT NOT NULL,
            is_finalized INTEGER DEFAULT 0,
            qr_code TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (manufacturing_record_id) REFERENCES manufacturing_records(id)
        )
    ''')

    conn.commit()
    conn.close()
    logger.info("Database initialized at %s", DATABASE_PATH)


# ============================================================
# ROW HELPERS
# ============================================================

def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    result = dict(row)
    for key in JSON_COLUMNS & result.keys():
        if result[key] is not None:
            result[key] = json.loads(result[key])
    return result


def _chain_values(transaction: Transaction) -> tuple:
    return (
        transaction.id, json.dumps(transaction.data), transaction.timestamp,
        transaction.nonce, transaction.previous_hash, transaction.hash,
        datetime.now().isoformat()
    )


CHAIN_INSERT = 'transaction_id, payload, block_timestamp, nonce, previous_hash, block_hash, created_at'


def transaction_from_row(row: Dict[str, Any]) -> Transaction:
    """Rebuild the transaction stored alongside an event row"""
    return Transaction(
        id=row['transaction_id'],
        timestamp=row['block_timestamp'],
        data=row['payload'],
        hash=row['block_hash'],
        previous_hash=row['previous_hash'] or "",
        nonce=row['nonce'],
    )


def _read_latest_hash(conn: sqlite3.Connection, table: str) -> str:
    cursor = conn.cursor()
    cursor.execute(f'SELECT block_hash FROM {table} ORDER BY rowid DESC LIMIT 1')
    row = cursor.fetchone()
    return row['block_hash'] if row else ""


def _latest_hash(table: str) -> str:
    conn = get_db()
    latest = _read_latest_hash(conn, table)
    conn.close()
    return latest


@contextmanager
def chain_writer(table: str) -> Iterator[Tuple[sqlite3.Connection, str]]:
    """
    Write connection for an event table, yielded with the table's latest
    block hash.

    The hash is read and the new row inserted under one BEGIN IMMEDIATE
    lock, so two writers can never chain to the same previous hash. The
    insert is committed when the block exits cleanly.
    """
    conn = get_db()
    try:
        conn.execute('BEGIN IMMEDIATE')
        yield conn, _read_latest_hash(conn, table)
        conn.commit()
    finally:
        # Closing without a commit rolls the insert back
        conn.close()


def _get(table: str, record_id: str) -> Optional[Dict[str, Any]]:
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute(f'SELECT * FROM {table} WHERE id = ?', (record_id,))
    row = cursor.fetchone()
    conn.close()
    return _row_to_dict(row) if row else None


def _get_many(table: str, column: str, values: List[str], order_by: str) -> List[Dict[str, Any]]:
    if not values:
        return []
    conn = get_db()
    cursor = conn.cursor()
    placeholders = ', '.join('?' for _ in values)
    cursor.execute(
        f'SELECT * FROM {table} WHERE {column} IN ({placeholders}) ORDER BY {order_by} ASC',
        list(values)
    )
    rows = cursor.fetchall()
    conn.close()
    return [_row_to_dict(row) for row in rows]


def _get_all(table: str, order_by: str) -> List[Dict[str, Any]]:
    conn = get_db()
    cursor = conn.cursor()
    cursor.execute(f'SELECT * FROM {table} ORDER BY {order_by} DESC')
    rows = cursor.fetchall()
    conn.close()
    return [_row_to_dict(row) for row in rows]


# ============================================================
# APPROVED ZONES
# ============================================================

class ApprovedZone:
    """Geofenced harvesting zones"""

    @staticmethod
    def create(zone: GeofenceZone, region: str = None) -> Dict[str, Any]:
        conn = get_db()
        cursor = conn.cursor()
        data = zone.to_dict()

        cursor.execute('''
            INSERT INTO approved_zones
            (id, name, region, coordinates, radius, allowed_species,
             seasonal_restrictions, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            zone.id, zone.name, region, json.dumps(data['coordinates']), zone.radius,
            json.dumps(data['allowed_species']), json.dumps(data['seasonal_restrictions']),
            datetime.now().isoformat()
        ))

        conn.commit()
        conn.close()
        return ApprovedZone.get(zone.id)

    @staticmethod
    def get(zone_id: str) -> Optional[Dict[str, Any]]:
        return _get('approved_zones', zone_id)

    @staticmethod
    def get_all() -> List[Dict[str, Any]]:
        return _get_all('approved_zones', 'created_at')

    @staticmethod
    def load_zones() -> List[GeofenceZone]:
        """All zones as GeofenceZone values, oldest first"""
        return [GeofenceZone.from_dict(row) for row in reversed(ApprovedZone.get_all())]


# ============================================================
# COLLECTION EVENTS
# ============================================================

class CollectionEvent:

    @staticmethod
    def latest_hash() -> str:
        return _latest_hash('collection_events')

    @staticmethod
    def writer():
        return chain_writer('collection_events')

    @staticmethod
    def record(conn: sqlite3.Connection, payload: Dict[str, Any], transaction: Transaction,
               zone_id: str = None, is_validated: bool = False) -> str:
        """Insert a collection event and its transaction on a writer connection"""
        cursor = conn.cursor()
        event_id = str(uuid.uuid4())

        cursor.execute(f'''
            INSERT INTO collection_events
            (id, species, botanical_name, quantity, harvest_timestamp, coordinates,
             quality_metrics, collector_id, zone_id, is_validated, {CHAIN_INSERT})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            event_id, payload['species'], payload.get('botanical_name'), payload['quantity'],
            payload['harvest_timestamp'], json.dumps(payload['coordinates']),
            json.dumps(payload.get('quality_metrics') or {}), payload.get('collector_id'),
            zone_id, int(is_validated), *_chain_values(transaction)
        ))

        return event_id

    @staticmethod
    def get(event_id: str) -> Optional[Dict[str, Any]]:
        return _get('collection_events', event_id)

    @staticmethod
    def get_all() -> List[Dict[str, Any]]:
        return _get_all('collection_events', 'harvest_timestamp')

    @staticmethod
    def get_many(event_ids: List[str]) -> List[Dict[str, Any]]:
        return _get_many('collection_events', 'id', event_ids, 'harvest_timestamp')


# ============================================================
# PROCESSING STEPS
# ============================================================

class ProcessingStep:

    @staticmethod
    def latest_hash() -> str:
        return _latest_hash('processing_steps')

    @staticmethod
    def writer():
        return chain_writer('processing_steps')

    @staticmethod
    def record(conn: sqlite3.Connection, payload: Dict[str, Any], transaction: Transaction) -> str:
        cursor = conn.cursor()
        step_id = str(uuid.uuid4())

        cursor.execute(f'''
            INSERT INTO processing_steps
            (id, collection_event_id, step_type, facility_id, operator_id,
             start_timestamp, end_timestamp, parameters, environmental_conditions, {CHAIN_INSERT})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            step_id, payload['collection_event_id'], payload['step_type'],
            payload.get('facility_id'), payload.get('operator_id'),
            payload['start_timestamp'], payload.get('end_timestamp'),
            json.dumps(payload.get('parameters') or {}),
            json.dumps(payload.get('environmental_conditions') or {}),
            *_chain_values(transaction)
        ))

        return step_id

    @staticmethod
    def get(step_id: str) -> Optional[Dict[str, Any]]:
        return _get('processing_steps', step_id)

    @staticmethod
    def get_by_collections(collection_event_ids: List[str]) -> List[Dict[str, Any]]:
        return _get_many('processing_steps', 'collection_event_id', collection_event_ids,
                         'start_timestamp')


# ============================================================
# QUALITY TESTS
# ============================================================

class QualityTest:

    @staticmethod
    def latest_hash() -> str:
        return _latest_hash('quality_tests')

    @staticmethod
    def writer():
        return chain_writer('quality_tests')

    @staticmethod
    def record(conn: sqlite3.Connection, payload: Dict[str, Any], transaction: Transaction,
               collection_event_id: str = None, processing_step_id: str = None) -> str:
        cursor = conn.cursor()
        test_id = str(uuid.uuid4())

        cursor.execute(f'''
            INSERT INTO quality_tests
            (id, sample_id, collection_event_id, processing_step_id, test_type, test_result,
             threshold_min, threshold_max, passed, test_timestamp, lab_id,
             certificate_number, {CHAIN_INSERT})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            test_id, payload['sample_id'], collection_event_id, processing_step_id,
            payload['test_type'], json.dumps(payload['test_result']),
            payload.get('threshold_min'), payload.get('threshold_max'), int(payload['passed']),
            payload['test_timestamp'], payload.get('lab_id'), payload.get('certificate_number'),
            *_chain_values(transaction)
        ))

        return test_id

    @staticmethod
    def get(test_id: str) -> Optional[Dict[str, Any]]:
        return _get('quality_tests', test_id)

    @staticmethod
    def get_many(test_ids: List[str]) -> List[Dict[str, Any]]:
        return _get_many('quality_tests', 'id', test_ids, 'test_timestamp')

    @staticmethod
    def compliance_rate() -> float:
        """Percentage of passed tests (100 when nothing was tested yet)"""
        conn = get_db()
        cursor = conn.cursor()
        cursor.execute('SELECT COUNT(*) AS total, SUM(passed) AS passed FROM quality_tests')
        row = cursor.fetchone()
        conn.close()
        if not row['total']:
            return 100.0
        return round(row['passed'] / row['total'] * 100, 1)


# ============================================================
# MANUFACTURING
# ============================================================

class ManufacturingRecord:

    @staticmethod
    def latest_hash() -> str:
        return _latest_hash('manufacturing_records')

    @staticmethod
    def writer():
        return chain_writer('manufacturing_records')

    @staticmethod
    def record(conn: sqlite3.Connection, payload: Dict[str, Any], transaction: Transaction,
               collection_event_ids: List[str]) -> str:
        cursor = conn.cursor()
        record_id = str(uuid.uuid4())

        cursor.execute(f'''
            INSERT INTO manufacturing_records
            (id, batch_code, product_name, product_type, composition_details,
             collection_event_ids, test_result_ids, final_product_quantity,
             total_herb_quantity_used_kg, manufacturing_date, {CHAIN_INSERT})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            record_id, payload['batch_code'], payload['product_name'], payload['product_type'],
            json.dumps(payload['composition_details']), json.dumps(collection_event_ids),
            json.dumps(payload.get('test_result_ids') or []), payload['final_product_quantity'],
            payload.get('total_herb_quantity_used_kg'), payload['manufacturing_date'],
            *_chain_values(transaction)
        ))

        return record_id

    @staticmethod
    def get(record_id: str) -> Optional[Dict[str, Any]]:
        return _get('manufacturing_records', record_id)

    @staticmethod
    def get_by_batch_code(batch_code: str) -> Optional[Dict[str, Any]]:
        conn = get_db()
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM manufacturing_records WHERE batch_code = ?', (batch_code,))
        row = cursor.fetchone()
        conn.close()
        return _row_to_dict(row) if row else None


# ============================================================
# PROVENANCE
# ============================================================

def _provenance_record(entity_type: EntityType, row: Dict[str, Any],
                       timestamp_column: str) -> ProvenanceRecord:
    location = None
    if entity_type == EntityType.COLLECTION:
        location = GeoPoint.from_dict(row['coordinates'])

    return ProvenanceRecord(
        transaction_id=row['transaction_id'],
        entity_type=entity_type,
        entity_id=row['id'],
        data=row['payload'],
        timestamp=row[timestamp_column],
        block_hash=row['block_hash'],
        location=location,
    )


class Provenance:
    """Provenance bundles tying a finished batch to its whole supply chain"""

    @staticmethod
    def gather(manufacturing: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
        """Rows of every stage that fed a manufacturing record"""
        collection_ids = manufacturing['collection_event_ids']
        return {
            'collection': CollectionEvent.get_many(collection_ids),
            'processing': ProcessingStep.get_by_collections(collection_ids),
            'testing': QualityTest.get_many(manufacturing['test_result_ids']),
            'manufacturing': [manufacturing],
        }

    @staticmethod
    def build_records(supply_chain: Dict[str, List[Dict[str, Any]]]) -> List[ProvenanceRecord]:
        """Provenance records in stage order, each stage sorted by time"""
        return (
            [_provenance_record(EntityType.COLLECTION, row, 'harvest_timestamp')
             for row in supply_chain['collection']]
            + [_provenance_record(EntityType.PROCESSING, row, 'start_timestamp')
               for row in supply_chain['processing']]
            + [_provenance_record(EntityType.TESTING, row, 'test_timestamp')
               for row in supply_chain['testing']]
            + [_provenance_record(EntityType.MANUFACTURING, row, 'manufacturing_date')
               for row in supply_chain['manufacturing']]
        )

    @staticmethod
    def create(manufacturing: Dict[str, Any], supply_chain: Dict[str, List[Dict[str, Any]]],
               merkle_root: str, is_finalized: bool, qr_code: str = None) -> Dict[str, Any]:
        conn = get_db()
        cursor = conn.cursor()
        provenance_id = str(uuid.uuid4())

        cursor.execute('''
            INSERT INTO provenance
            (id, batch_number, product_name, manufacturing_record_id, collection_events,
             processing_steps, quality_tests, merkle_root, is_finalized, qr_code, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (
            provenance_id, manufacturing['batch_code'], manufacturing['product_name'],
            manufacturing['id'],
            json.dumps([row['id'] for row in supply_chain['collection']]),
            json.dumps([row['id'] for row in supply_chain['processing']]),
            json.dumps([row['id'] for row in supply_chain['testing']]),
            merkle_root, int(is_finalized), qr_code, datetime.now().isoformat()
        ))

        conn.commit()
        conn.close()
        return Provenance.get(manufacturing['batch_code'])

    @staticmethod
    def get(batch_number: str) -> Optional[Dict[str, Any]]:
        conn = get_db()
        cursor = conn.cursor()
        cursor.execute('SELECT * FROM provenance WHERE batch_number = ?', (batch_number,))
        row = cursor.fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    @staticmethod
    def trace(batch_number: str) -> Optional[Dict[str, Any]]:
        """Stored bundle plus the rebuilt provenance records and transactions"""
        provenance = Provenance.get(batch_number)
        if not provenance:
            return None

        manufacturing = ManufacturingRecord.get(provenance['manufacturing_record_id'])
        supply_chain = {
            'collection': CollectionEvent.get_many(provenance['collection_events']),
            'processing': _get_many('processing_steps', 'id', provenance['processing_steps'],
                                    'start_timestamp'),
            'testing': QualityTest.get_many(provenance['quality_tests']),
            'manufacturing': [manufacturing],
        }

        rows = [row for stage in supply_chain.values() for row in stage]
        return {
            'provenance': provenance,
            'supply_chain': supply_chain,
            'records': Provenance.build_records(supply_chain),
            'transactions': [transaction_from_row(row) for row in rows],
        }


# ============================================================
# OVERVIEW
# ============================================================

def supply_chain_overview() -> Dict[str, Any]:
    """Record counts per stage and the lab compliance rate"""
    conn = get_db()
    cursor = conn.cursor()

    counts = {}
    for key, table in [
        ('total_collections', 'collection_events'),
        ('total_processing_steps', 'processing_steps'),
        ('total_tests', 'quality_tests'),
        ('total_manufacturing', 'manufacturing_records'),
        ('total_provenance', 'provenance'),
    ]:
        cursor.execute(f'SELECT COUNT(*) AS n FROM {table}')
        counts[key] = cursor.fetchone()['n']

    conn.close()
    counts['compliance_rate'] = QualityTest.compliance_rate()
    return counts
