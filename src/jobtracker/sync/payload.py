"""
Versioned encoding of outbox payloads.

The outbox stores ``data`` as opaque JSON text. Everything written since
version 1 uses an envelope so the push side can tell which schema it is
reading:

    {"schema_version": 1, "table": "applications", "fields": {...}}

``fields`` is a snapshot of the local row restricted to the table's own
columns (see ``payload_columns``). Bare JSON objects written before the
envelope existed decode as version 0.
"""
import json
from typing import Any, Dict, Optional, Union

from sqlmodel import SQLModel

from jobtracker.models.records import SYNC_COLUMNS, SYNCABLE_MODELS, payload_columns
from jobtracker.sync.errors import PayloadValidationError

PAYLOAD_SCHEMA_VERSION = 1


def snapshot(row: SQLModel) -> Dict[str, Any]:
    """JSON-safe dict of a row's payload columns."""
    return row.model_dump(mode="json", exclude=set(SYNC_COLUMNS))


def encode_payload(table: str, data: Union[Dict[str, Any], SQLModel, None]) -> Optional[str]:
    """Serialize a record snapshot into the outbox envelope.

    Args:
        table: Syncable table name.
        data: A dict of column values, a SQLModel row, or None (deletes).

    Returns:
        JSON text, or None when there is nothing to carry.
    """
    if data is None:
        return None
    if isinstance(data, SQLModel):
        fields = snapshot(data)
    else:
        fields = {k: v for k, v in data.items() if k not in SYNC_COLUMNS}
    envelope = {
        "schema_version": PAYLOAD_SCHEMA_VERSION,
        "table": table,
        "fields": fields,
    }
    return json.dumps(envelope, default=str)


def decode_payload(table: str, raw: Optional[str]) -> Dict[str, Any]:
    """Parse and validate an outbox payload for the given table.

    Raises:
        PayloadValidationError: unparseable JSON, an unknown schema version,
            a table mismatch, or fields that are not columns of the table.
    """
    if table not in SYNCABLE_MODELS:
        raise PayloadValidationError(f"Table {table!r} does not take part in sync")
    if raw is None or raw == "":
        return {}

    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PayloadValidationError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise PayloadValidationError("Payload must be a JSON object")

    version = decoded.get("schema_version", 0)
    if version == 0:
        fields = decoded
    elif version == PAYLOAD_SCHEMA_VERSION:
        if decoded.get("table") != table:
            raise PayloadValidationError(
                f"Payload was written for {decoded.get('table')!r}, not {table!r}"
            )
        fields = decoded.get("fields")
        if not isinstance(fields, dict):
            raise PayloadValidationError("Payload 'fields' must be a JSON object")
    else:
        raise PayloadValidationError(f"Unsupported payload schema version {version!r}")

    fields = {k: v for k, v in fields.items() if k not in SYNC_COLUMNS}
    unknown = set(fields) - payload_columns(table)
    if unknown:
        raise PayloadValidationError(
            f"Unknown fields for {table}: {', '.join(sorted(unknown))}"
        )
    return fields
