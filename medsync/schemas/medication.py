"""
JSON schema for raw medication entries returned by source adapters.

Adapters normalize their upstream formats (FHIR MedicationRequest,
pharmacy dispense feeds, ...) to this flat shape before handing records over.
"""

_NULLABLE_STRING = {"type": ["string", "null"]}

MEDICATION_RECORD_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Source medication record",
    "type": "object",
    "properties": {
        "name": {**_NULLABLE_STRING, "description": "Display name of the medication."},
        "dosage": {**_NULLABLE_STRING, "description": "Free-text dose, e.g. '10mg'."},
        "frequency": {**_NULLABLE_STRING, "description": "Free-text schedule, e.g. 'BID'."},
        "status": {**_NULLABLE_STRING, "description": "active | stopped | on-hold | ..."},
        "startDate": {**_NULLABLE_STRING, "description": "ISO 8601 date or datetime."},
        "ndc": {**_NULLABLE_STRING, "description": "National Drug Code."},
        "rxcui": {**_NULLABLE_STRING, "description": "RxNorm concept identifier."},
        "collectedAt": {
            **_NULLABLE_STRING,
            "description": "ISO 8601 timestamp; overrides the batch collection time.",
        },
    },
    # A record must carry at least one identity to be grouped
    "anyOf": [
        {"required": ["ndc"], "properties": {"ndc": {"type": "string", "minLength": 1}}},
        {"required": ["rxcui"], "properties": {"rxcui": {"type": "string", "minLength": 1}}},
        {"required": ["name"], "properties": {"name": {"type": "string", "minLength": 1}}},
    ],
    "additionalProperties": True,
}
