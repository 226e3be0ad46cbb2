"""
Demo script - Walk an Ashwagandha batch through every portal of a running API
"""

import json
import os
import time
from datetime import datetime, timezone

import requests

from ayurtrace.sync_queue import SyncQueue

BASE_URL = os.environ.get('AYURTRACE_API_URL', 'http://localhost:5001/api')

# Madhya Pradesh wild-harvest zone
ZONE = {
    "name": "Bhopal Forest Division",
    "region": "Madhya Pradesh",
    "coordinates": [
        {"lat": 23.0, "lng": 77.0},
        {"lat": 23.0, "lng": 78.0},
        {"lat": 24.0, "lng": 78.0},
        {"lat": 24.0, "lng": 77.0}
    ],
    "allowed_species": ["Ashwagandha", "Shatavari"],
}


def print_response(title, response):
    """Pretty print API response"""
    print(f"\n{'=' * 60}")
    print(f"📦 {title} [{response.status_code}]")
    print('=' * 60)
    print(json.dumps(response.json(), indent=2)[:1500])


def post_collection(collection):
    """Sync one queued collection, False keeps it queued"""
    resp = requests.post(f"{BASE_URL}/collections", json=collection, timeout=10)
    return resp.status_code == 201


def demo_supply_chain():
    """Simulate the complete herb journey"""

    print("\n" + "🌿" * 20)
    print("  ASHWAGANDHA SUPPLY CHAIN DEMO")
    print("🌿" * 20)

    # STEP 1: Approved zone
    resp = requests.post(f"{BASE_URL}/zones", json=ZONE)
    print(f"  ✓ Zone registered: {ZONE['name']} ({resp.status_code})")

    # STEP 2: Collector records a harvest
    resp = requests.post(f"{BASE_URL}/collections", json={
        "species": "Ashwagandha",
        "botanical_name": "Withania somnifera",
        "quantity": 120,
        "coordinates": {"lat": 23.26, "lng": 77.41},
        "quality_metrics": {"freshness": 8, "maturity": 7, "damage": 0},
        "collector_id": "COL-001"
    })
    print_response("Collection", resp)
    collection_id = resp.json()['event']['id']
    time.sleep(1)

    # STEP 2b: A harvest recorded without signal waits in the device queue
    queue = SyncQueue().enqueue({
        "species": "Shatavari",
        "botanical_name": "Asparagus racemosus",
        "quantity": 45,
        "coordinates": {"lat": 23.71, "lng": 77.83},
        "harvest_timestamp": datetime.now(timezone.utc).isoformat(),
        "collector_id": "COL-002"
    })
    print(f"\n  📴 Offline: {len(queue)} collection queued on the device")
    synced, queue = queue.drain(post_collection)
    print(f"  📶 Back online: {synced} synced, {len(queue)} still queued")

    # STEP 3: Processing
    for step_type in ['drying', 'grinding']:
        resp = requests.post(f"{BASE_URL}/processing-steps", json={
            "collection_event_id": collection_id,
            "step_type": step_type,
            "facility_id": "FAC-BPL-01",
            "environmental_conditions": {"temperature": 32, "humidity": 40}
        })
        print(f"  ✓ Processing step: {step_type}")
        time.sleep(0.5)

    # STEP 4: Lab test
    resp = requests.post(f"{BASE_URL}/quality-tests", json={
        "collection_event_id": collection_id,
        "test_type": "heavy_metals",
        "test_result": {"value": 4.2, "unit": "ppm"},
        "threshold_max": 10,
        "lab_id": "LAB-NABL-17"
    })
    print_response("Quality test", resp)
    test_id = resp.json()['test']['id']
    time.sleep(1)

    # STEP 5: Manufacturing
    batch_code = f"BATCH-{int(time.time())}"
    resp = requests.post(f"{BASE_URL}/manufacturing", json={
        "product_name": "Ashwagandha Capsules",
        "batch_code": batch_code,
        "product_type": "capsule",
        "final_product_quantity": 1000,
        "composition_details": {"Ashwagandha": {"percentage": 100}},
        "collection_event_ids": [collection_id],
        "test_result_ids": [test_id]
    })
    print_response("Manufacturing", resp)

    # STEP 6: Provenance bundle + QR
    resp = requests.post(f"{BASE_URL}/provenance", json={"batch_code": batch_code})
    print(f"\n  🔗 Merkle root: {resp.json()['merkle_root']}")
    print(f"  ✓ Product QR generated ({len(resp.json()['qr_code_base64'])} base64 chars)")

    # FINAL: Consumer trace
    resp = requests.get(f"{BASE_URL}/trace/{batch_code}")
    trace = resp.json()

    print(f"\n📜 Timeline for {batch_code}:")
    for event in trace['timeline']:
        print(f"   {event['timestamp'][:19]} | {event['stage']:15} | {event['block_hash'][:16]}...")

    print(f"\n✅ Verified: {trace['verified']}")
    print("\n" + "🎉" * 20)
    print("  DEMO COMPLETE!")
    print("🎉" * 20)


if __name__ == '__main__':
    demo_supply_chain()
