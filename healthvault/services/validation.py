"""
JSON Schema validation service.

Collects every error rather than failing on the first one, so a rejected
resource reports all of its problems at once.
"""

from functools import lru_cache
from typing import Any

import jsonschema

from healthvault.schemas.fhir import FHIR_SCHEMAS
from healthvault.schemas.resources import ResourceType


@lru_cache(maxsize=None)
def _validator_for(resource_type: ResourceType) -> jsonschema.Draft7Validator:
    return jsonschema.Draft7Validator(FHIR_SCHEMAS[resource_type])


def validate_resource(resource_type: ResourceType, payload: dict[str, Any]) -> list[str]:
    """Validate a resource payload against the ingest schema for its type."""
    validator = _validator_for(resource_type)
    return sorted(error.message for error in validator.iter_errors(payload))
