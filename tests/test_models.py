"""
Store tests - hash chain writes
"""

import sqlite3

import pytest

from ayurtrace import models
from ayurtrace.blockchain import build_transaction
from ayurtrace.models import CollectionEvent, ProcessingStep


def processing_payload(collection_id='c1'):
    return {
        'collection_event_id': collection_id,
        'step_type': 'drying',
        'start_timestamp': '2024-03-01T10:00:00+00:00',
    }


class TestChainWriter:
    def test_writer_yields_latest_hash(self, app, collection):
        with CollectionEvent.writer() as (conn, previous_hash):
            assert previous_hash == collection['block_hash']
        assert CollectionEvent.latest_hash() == collection['block_hash']

    def test_empty_table_starts_chain(self, app):
        with ProcessingStep.writer() as (conn, previous_hash):
            assert previous_hash == ''

    def test_writer_holds_lock_until_insert(self, app):
        """A second writer cannot read the latest hash while the first is open"""
        with ProcessingStep.writer() as (conn, previous_hash):
            other = sqlite3.connect(models.DATABASE_PATH, timeout=0)
            with pytest.raises(sqlite3.OperationalError):
                other.execute('BEGIN IMMEDIATE')
            other.close()

            payload = processing_payload()
            transaction = build_transaction('processing', payload, previous_hash)
            step_id = ProcessingStep.record(conn, payload, transaction)

        step = ProcessingStep.get(step_id)
        with ProcessingStep.writer() as (conn, previous_hash):
            assert previous_hash == step['block_hash']

    def test_failed_block_rolls_back(self, app):
        payload = processing_payload()
        with pytest.raises(RuntimeError):
            with ProcessingStep.writer() as (conn, previous_hash):
                step_id = ProcessingStep.record(conn, payload, build_transaction('processing', payload))
                raise RuntimeError('ledger unavailable')

        assert ProcessingStep.get(step_id) is None
        assert ProcessingStep.latest_hash() == ''
