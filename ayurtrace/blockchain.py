"""
AyurTrace - Hash Chain Engine
SHA-256 hash chaining, Merkle roots and transaction verification (like blockchain)
"""

import asyncio
import dataclasses
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from ayurtrace import config

logger = logging.getLogger(__name__)


# ============================================================
# CANONICAL SERIALIZATION
# ============================================================

def _json_default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not serializable")


def serialize(data: Any) -> str:
    """Canonical JSON form of a payload, the only thing that gets hashed"""
    return json.dumps(data, sort_keys=True, default=_json_default)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


# ============================================================
# HASH FUNCTIONS
# ============================================================

def new_nonce() -> str:
    return secrets.token_hex(8)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_hash(
    data: Any,
    previous_hash: str = "",
    timestamp: Optional[str] = None,
    nonce: Optional[str] = None
) -> str:
    """
    Calculate the SHA-256 hash of a signed payload.

    The digest covers serialize(data) + previous_hash + timestamp + nonce.
    Without an explicit timestamp and nonce, fresh ones are drawn, so two
    calls with the same data give different hashes. Passing the stored
    values back reproduces the original hash.
    """
    if timestamp is None:
        timestamp = now_iso()
    if nonce is None:
        nonce = new_nonce()
    return sha256_hex(serialize(data) + (previous_hash or "") + timestamp + nonce)


def merkle_root(items: Sequence[Any]) -> str:
    """
    Merkle root over an ordered list of items.

    Empty input gives "". An odd node at the end of a level is paired
    with itself.
    """
    if len(items) == 0:
        return ""
    if len(items) == 1:
        return sha256_hex(serialize(items[0]))

    level = [sha256_hex(serialize(item)) for item in items]

    while len(level) > 1:
        next_level = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            next_level.append(sha256_hex(left + right))
        level = next_level

    return level[0]


# ============================================================
# TRANSACTIONS
# ============================================================

@dataclass(frozen=True)
class Transaction:
    """One recorded event in the hash chain"""
    id: str
    timestamp: str
    data: Dict[str, Any]
    hash: str
    previous_hash: str
    nonce: str
    merkle_root: Optional[str] = None
    signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=row['id'],
            timestamp=row['timestamp'],
            data=row['data'],
            hash=row['hash'],
            previous_hash=row.get('previous_hash') or "",
            nonce=row['nonce'],
            merkle_root=row.get('merkle_root'),
            signature=row.get('signature'),
        )


def build_transaction(
    entity_type: str,
    entity_data: Dict[str, Any],
    previous_hash: Optional[str] = None
) -> Transaction:
    """Build and hash a transaction without the simulated ledger delay"""
    data = {
        'entityType': getattr(entity_type, 'value', entity_type),
        **entity_data,
        'location': entity_data.get('coordinates'),
    }
    timestamp = now_iso()
    nonce = new_nonce()
    previous_hash = previous_hash or ""

    return Transaction(
        id=secrets.token_hex(16),
        timestamp=timestamp,
        data=data,
        hash=generate_hash(data, previous_hash, timestamp, nonce),
        previous_hash=previous_hash,
        nonce=nonce,
    )


async def create_transaction(
    entity_type: str,
    entity_data: Dict[str, Any],
    previous_hash: Optional[str] = None,
    delay: Optional[float] = None
) -> Transaction:
    """Create a transaction and wait out the simulated ledger-commit latency"""
    transaction = build_transaction(entity_type, entity_data, previous_hash)

    if delay is None:
        delay = config.LEDGER_DELAY_SECONDS
    await asyncio.sleep(delay)

    logger.debug("Transaction %s committed (%s)", transaction.id, transaction.data['entityType'])
    return transaction


def verify_transaction(transaction: Transaction) -> bool:
    """Recompute the hash from the stored signed payload and compare"""
    expected_hash = generate_hash(
        transaction.data,
        transaction.previous_hash,
        transaction.timestamp,
        transaction.nonce
    )
    return expected_hash == transaction.hash


def verify_chain(transactions: List[Transaction]) -> bool:
    """Verify every transaction and the previous_hash links between them"""
    for i, transaction in enumerate(transactions):
        if not verify_transaction(transaction):
            logger.warning("Chain broken at transaction %d (%s): hash mismatch", i, transaction.id)
            return False
        if i > 0 and transaction.previous_hash != transactions[i - 1].hash:
            logger.warning("Chain broken at transaction %d (%s): bad link", i, transaction.id)
            return False
    return True
