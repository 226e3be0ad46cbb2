"""
AyurTrace - Provenance
Provenance records, canonical stage ordering and supply chain validation
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ayurtrace.blockchain import merkle_root
from ayurtrace.geofence import GeoPoint


class EntityType(str, Enum):
    COLLECTION = 'collection'
    PROCESSING = 'processing'
    TESTING = 'testing'
    MANUFACTURING = 'manufacturing'
    PACKAGING = 'packaging'


# Canonical stage ordering; a valid chain never moves backwards through it
STAGES = [
    EntityType.COLLECTION,
    EntityType.PROCESSING,
    EntityType.TESTING,
    EntityType.MANUFACTURING,
    EntityType.PACKAGING,
]


class VerificationStatus(str, Enum):
    PENDING = 'pending'
    VERIFIED = 'verified'
    FAILED = 'failed'


Timestamp = Union[datetime, str, int, float]


@dataclass
class ProvenanceRecord:
    """One attested event in a product's supply chain history"""
    transaction_id: str
    entity_type: EntityType
    entity_id: str
    data: Any
    timestamp: Timestamp
    block_hash: str = ""
    location: Optional[GeoPoint] = None
    verification_status: VerificationStatus = VerificationStatus.PENDING

    def __post_init__(self):
        # ValueError for anything outside the canonical stages
        self.entity_type = EntityType(self.entity_type)
        self.verification_status = VerificationStatus(self.verification_status)


@dataclass
class ChainValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'is_valid': self.is_valid, 'errors': self.errors}


def _comparable(timestamp: Timestamp):
    if isinstance(timestamp, str):
        timestamp = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
    if isinstance(timestamp, datetime) and timestamp.tzinfo is None:
        # Naive times are taken as UTC
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def stage_index(entity_type: Union[EntityType, str]) -> int:
    return STAGES.index(EntityType(entity_type))


def validate_supply_chain(chain: Sequence[ProvenanceRecord]) -> ChainValidation:
    """Check chronology and stage progression, collecting every error"""
    errors = []

    # Check chronological order
    for i in range(1, len(chain)):
        prev = _comparable(chain[i - 1].timestamp)
        curr = _comparable(chain[i].timestamp)
        if curr < prev:
            errors.append(f"Invalid timestamp order at index {i}")

    # Validate entity type progression
    for i in range(1, len(chain)):
        prev_type = chain[i - 1].entity_type
        curr_type = chain[i].entity_type
        if stage_index(curr_type) < stage_index(prev_type):
            errors.append(
                f"Invalid supply chain progression: {prev_type.value} -> {curr_type.value}"
            )

    return ChainValidation(is_valid=len(errors) == 0, errors=errors)


def mark_verified(chain: Sequence[ProvenanceRecord]) -> List[ProvenanceRecord]:
    """Copies of the records with verification_status set from validation"""
    status = (VerificationStatus.VERIFIED if validate_supply_chain(chain).is_valid
              else VerificationStatus.FAILED)
    return [dataclasses.replace(record, verification_status=status) for record in chain]


def create_provenance_chain(records: Sequence[ProvenanceRecord]) -> str:
    """Merkle root committing to a product's whole provenance"""
    return merkle_root(list(records))
