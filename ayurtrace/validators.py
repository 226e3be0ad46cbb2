"""
AyurTrace - Portal Validators
Form checks for the collector, testing lab and manufacturer portals.
Every check returns all problems at once as human-readable strings.
"""

import math
from typing import Any, Dict, List, Optional


def _check_positive(value: Any, label: str, errors: List[str]):
    """Append an error unless value is a finite number above zero (numeric strings allowed)"""
    if value is None or value == '':
        errors.append(f'{label} must be greater than 0')
        return

    try:
        number = float(value)
    except (TypeError, ValueError):
        errors.append(f'{label} must be a number')
        return

    if not math.isfinite(number):
        errors.append(f'{label} must be a number')
    elif number <= 0:
        errors.append(f'{label} must be greater than 0')


def validate_collection(species: Optional[str], quantity: Any, location: Any) -> List[str]:
    errors = []

    if not species:
        errors.append('Species is required')
    _check_positive(quantity, 'Quantity', errors)
    if not location:
        errors.append('Location data is required')

    return errors


def validate_test_result(value: float, threshold_min: Optional[float] = None,
                         threshold_max: Optional[float] = None) -> bool:
    """True when the value lies within the (inclusive) thresholds that are set"""
    if threshold_min is not None and value < threshold_min:
        return False
    if threshold_max is not None and value > threshold_max:
        return False
    return True


def validate_manufacturing(
    product_name: Optional[str],
    batch_code: Optional[str],
    final_product_quantity: Any,
    composition_details: Any
) -> List[str]:
    errors = []

    if not product_name:
        errors.append('Product name is required')
    if not batch_code:
        errors.append('Batch code is required')
    _check_positive(final_product_quantity, 'Final product quantity', errors)

    if not composition_details:
        errors.append('At least one composition item is required')
        errors.append('Composition percentages must sum to 100%')
    elif not isinstance(composition_details, dict) or not all(
        isinstance(item, dict) for item in composition_details.values()
    ):
        errors.append('Composition details must map each ingredient to its details')
    else:
        errors.extend(_check_composition(composition_details))

    return errors


def _check_composition(composition_details: Dict[str, Dict[str, Any]]) -> List[str]:
    try:
        total_percentage = sum(
            float(item.get('percentage', 0)) for item in composition_details.values()
        )
    except (TypeError, ValueError):
        return ['Composition percentages must be numbers']
    if not math.isfinite(total_percentage):
        return ['Composition percentages must be numbers']

    # Composition percentages must sum to 100%
    if abs(total_percentage - 100) > 0.1:
        return ['Composition percentages must sum to 100%']
    return []
