"""Standard fields of the CRM entity types, as offered to workflow editors."""

from typing import Dict, List, Tuple

from ..models.core import EntityField

# (name, label, field_type); names match the keys of stored record data
_AUDIT_FIELDS: List[Tuple[str, str, str]] = [
    ("created_at", "Created At", "date"),
    ("updated_at", "Updated At", "date"),
]

STANDARD_FIELDS: Dict[str, List[Tuple[str, str, str]]] = {
    "Contact": [
        ("first_name", "First Name", "text"),
        ("last_name", "Last Name", "text"),
        ("email", "Email", "text"),
        ("phone", "Phone", "text"),
        ("job_title", "Job Title", "text"),
        ("department", "Department", "text"),
        ("company_id", "Company", "relation"),
        *_AUDIT_FIELDS,
    ],
    "Company": [
        ("name", "Name", "text"),
        ("industry", "Industry", "text"),
        ("website", "Website", "text"),
        ("phone", "Phone", "text"),
        ("email", "Email", "text"),
        ("size", "Size", "text"),
        *_AUDIT_FIELDS,
    ],
    "Deal": [
        ("title", "Title", "text"),
        ("value", "Value", "number"),
        ("probability", "Probability", "number"),
        ("expected_close_date", "Expected Close Date", "date"),
        ("stage", "Stage", "text"),
        ("pipeline_id", "Pipeline", "relation"),
        ("pipeline_stage_id", "Pipeline Stage", "relation"),
        *_AUDIT_FIELDS,
    ],
    "Lead": [
        ("first_name", "First Name", "text"),
        ("last_name", "Last Name", "text"),
        ("email", "Email", "text"),
        ("phone", "Phone", "text"),
        ("company_name", "Company Name", "text"),
        ("status", "Status", "text"),
        ("temperature", "Temperature", "text"),
        ("is_converted", "Is Converted", "checkbox"),
        *_AUDIT_FIELDS,
    ],
    "Activity": [
        ("subject", "Subject", "text"),
        ("type", "Type", "text"),
        ("status", "Status", "text"),
        ("priority", "Priority", "text"),
        ("due_date", "Due Date", "date"),
        ("completed_at", "Completed At", "date"),
        *_AUDIT_FIELDS,
    ],
}


def standard_fields(entity_type: str) -> List[EntityField]:
    """Standard fields of ``entity_type``; empty for types without a field list."""
    return [
        EntityField(name=name, label=label, field_type=field_type)
        for name, label, field_type in STANDARD_FIELDS.get(entity_type, [])
    ]
