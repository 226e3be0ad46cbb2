"""
AyurTrace - Stage Payloads
Typed payload schemas per supply chain stage, tagged by entity type
"""

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CollectionData:
    species: str
    botanical_name: str
    quantity: float
    harvest_timestamp: str
    coordinates: Optional[Dict[str, float]] = None
    quality_metrics: Dict[str, Any] = field(default_factory=dict)
    collector_id: Optional[str] = None
    zone_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ProcessingData:
    collection_event_id: str
    step_type: str
    start_timestamp: str
    facility_id: Optional[str] = None
    operator_id: Optional[str] = None
    end_timestamp: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    environmental_conditions: Dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None


@dataclass
class TestingData:
    sample_id: str
    test_type: str
    test_result: Dict[str, Any]
    passed: bool
    test_timestamp: str
    lab_id: Optional[str] = None
    threshold_min: Optional[float] = None
    threshold_max: Optional[float] = None
    certificate_number: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ManufacturingData:
    batch_code: str
    product_name: str
    product_type: str
    final_product_quantity: float
    manufacturing_date: str
    composition_details: Dict[str, Any] = field(default_factory=dict)
    test_result_ids: List[str] = field(default_factory=list)
    total_herb_quantity_used_kg: Optional[float] = None
    manufacturing_company_id: Optional[str] = None
    sensor_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PackagingData:
    manufacturing_record_id: str
    packaging_date: str
    package_details: Dict[str, Any] = field(default_factory=dict)
    product_qr_code: Optional[str] = None
    expiry_date: Optional[str] = None
    packaged_by: Optional[str] = None


PAYLOAD_TYPES = {
    'collection': CollectionData,
    'processing': ProcessingData,
    'testing': TestingData,
    'manufacturing': ManufacturingData,
    'packaging': PackagingData,
}


def build_payload(entity_type: str, fields: Dict[str, Any]):
    """Construct the payload class for `entity_type`, ignoring unknown keys"""
    entity_type = getattr(entity_type, 'value', entity_type)
    try:
        payload_cls = PAYLOAD_TYPES[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}")

    known = {f.name for f in dataclasses.fields(payload_cls)}
    return payload_cls(**{k: v for k, v in fields.items() if k in known})


def to_dict(payload) -> Dict[str, Any]:
    """The opaque blob handed to the hash engine"""
    return dataclasses.asdict(payload)
