"""
JSON codec for backup archive documents.

Dates are written as ISO-8601 UTC strings. Older exporters wrote dates as
seconds since the reference epoch 2001-01-01T00:00:00Z; those documents are
still accepted. Each document is decoded with the ISO-8601 strategy first
and falls back to the numeric strategy only if that fails.

Decoding is strict about types: a row with a missing required key or a
value of the wrong type makes the whole document undecodable.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from waypost.backup.errors import InvalidArchiveError, UnsupportedVersionError
from waypost.backup.models import BackupManifest, BackupTaxon, BackupVisit
from waypost.storage.models import ensure_utc

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSION = "1.0"

REFERENCE_EPOCH = datetime(2001, 1, 1, tzinfo=UTC)

# old integrity key -> current key
LEGACY_VISIT_KEYS = {
    "integritySigDER": "integritySignatureBase64",
    "integrityPubRaw": "integrityPublicKeyBase64",
    "integrityPayloadHash": "integrityPayloadHashHex",
}


class DateStrategy(Enum):
    """How dates are represented inside a document."""

    ISO8601 = "iso8601"
    REFERENCE_SECONDS = "reference_seconds"


class DecodeError(ValueError):
    """A document does not match the expected shape under one date strategy."""

    pass


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------


def encode_date(value: datetime) -> str:
    """Encode a datetime as ISO-8601 UTC with a trailing Z."""
    text = ensure_utc(value).isoformat()
    return text.replace("+00:00", "Z")


def decode_date(value: Any, strategy: DateStrategy) -> datetime:
    """
    Decode one date value.

    Raises:
        DecodeError: If the value does not fit the strategy.
    """
    if strategy is DateStrategy.ISO8601:
        if not isinstance(value, str):
            raise DecodeError(f"expected ISO-8601 string, got {type(value).__name__}")
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError as e:
            raise DecodeError(f"invalid ISO-8601 date {value!r}") from e

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"expected numeric date, got {type(value).__name__}")
    try:
        return REFERENCE_EPOCH + timedelta(seconds=value)
    except OverflowError as e:
        raise DecodeError(f"numeric date out of range: {value}") from e


# -----------------------------------------------------------------------------
# Field helpers
# -----------------------------------------------------------------------------


def _require(row: dict[str, Any], key: str) -> Any:
    if key not in row or row[key] is None:
        raise DecodeError(f"missing required key '{key}'")
    return row[key]


def _string(row: dict[str, Any], key: str) -> str:
    value = _require(row, key)
    if not isinstance(value, str):
        raise DecodeError(f"'{key}' must be a string")
    return value


def _optional_string(row: dict[str, Any], key: str) -> str | None:
    value = row.get(key)
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"'{key}' must be a string or null")
    return value


def _number(value: Any, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError(f"'{key}' must be a number")
    return float(value)


def _optional_number(row: dict[str, Any], key: str) -> float | None:
    value = row.get(key)
    if value is None:
        return None
    return _number(value, key)


def _optional_bool(row: dict[str, Any], key: str) -> bool | None:
    value = row.get(key)
    if value is not None and not isinstance(value, bool):
        raise DecodeError(f"'{key}' must be a boolean or null")
    return value


def _string_list(row: dict[str, Any], key: str) -> list[str]:
    value = row.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise DecodeError(f"'{key}' must be a list of strings")
    return list(value)


def _count(data: dict[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"'{key}' must be an integer")
    return value


# -----------------------------------------------------------------------------
# Row encoders/decoders
# -----------------------------------------------------------------------------


def encode_visit(visit: BackupVisit) -> dict[str, Any]:
    return {
        "id": visit.id,
        "timestampUTC": encode_date(visit.timestamp_utc),
        "latitude": visit.latitude,
        "longitude": visit.longitude,
        "horizontalAccuracy": visit.horizontal_accuracy,
        "isSimulatedBySoftware": visit.is_simulated_by_software,
        "isProducedByAccessory": visit.is_produced_by_accessory,
        "integrityAlgo": visit.integrity_algo,
        "integritySignatureBase64": visit.integrity_signature_base64,
        "integrityPublicKeyBase64": visit.integrity_public_key_base64,
        "integrityPayloadHashHex": visit.integrity_payload_hash_hex,
        "integrityCreatedAtUTC": encode_date(visit.integrity_created_at_utc),
        "title": visit.title,
        "facilityName": visit.facility_name,
        "facilityAddress": visit.facility_address,
        "facilityCategory": visit.facility_category,
        "comment": visit.comment,
        "labelIds": list(visit.label_ids),
        "groupId": visit.group_id,
        "memberIds": list(visit.member_ids),
        "resolvedAddress": visit.resolved_address,
        "photoPaths": list(visit.photo_paths),
    }


def decode_visit(row: Any, strategy: DateStrategy) -> BackupVisit:
    """
    Decode one visits.json row.

    Raises:
        DecodeError: If the row is malformed under this strategy.
    """
    if not isinstance(row, dict):
        raise DecodeError("visit row must be an object")

    row = dict(row)
    for legacy_key, key in LEGACY_VISIT_KEYS.items():
        if key not in row and legacy_key in row:
            row[key] = row.pop(legacy_key)

    return BackupVisit(
        id=_string(row, "id"),
        timestamp_utc=decode_date(_require(row, "timestampUTC"), strategy),
        latitude=_number(_require(row, "latitude"), "latitude"),
        longitude=_number(_require(row, "longitude"), "longitude"),
        horizontal_accuracy=_optional_number(row, "horizontalAccuracy"),
        is_simulated_by_software=_optional_bool(row, "isSimulatedBySoftware"),
        is_produced_by_accessory=_optional_bool(row, "isProducedByAccessory"),
        integrity_algo=_string(row, "integrityAlgo"),
        integrity_signature_base64=_string(row, "integritySignatureBase64"),
        integrity_public_key_base64=_string(row, "integrityPublicKeyBase64"),
        integrity_payload_hash_hex=_string(row, "integrityPayloadHashHex"),
        integrity_created_at_utc=decode_date(
            _require(row, "integrityCreatedAtUTC"), strategy
        ),
        title=_optional_string(row, "title"),
        facility_name=_optional_string(row, "facilityName"),
        facility_address=_optional_string(row, "facilityAddress"),
        facility_category=_optional_string(row, "facilityCategory"),
        comment=_optional_string(row, "comment"),
        label_ids=_string_list(row, "labelIds"),
        group_id=_optional_string(row, "groupId"),
        member_ids=_string_list(row, "memberIds"),
        resolved_address=_optional_string(row, "resolvedAddress"),
        photo_paths=_string_list(row, "photoPaths"),
    )


def encode_taxon(taxon: BackupTaxon) -> dict[str, Any]:
    return {"id": taxon.id, "name": taxon.name}


def decode_taxon(row: Any, strategy: DateStrategy) -> BackupTaxon:
    """Decode one taxonomy row. The name may be blank; the importer skips those."""
    if not isinstance(row, dict):
        raise DecodeError("taxonomy row must be an object")
    name = row.get("name")
    if name is None:
        name = ""
    if not isinstance(name, str):
        raise DecodeError("'name' must be a string")
    return BackupTaxon(id=_string(row, "id"), name=name)


# -----------------------------------------------------------------------------
# Documents
# -----------------------------------------------------------------------------


def decode_document(
    name: str,
    raw: bytes | str,
    row_decoder: Callable[[Any, DateStrategy], Any],
) -> list[Any]:
    """
    Decode one array document, trying each date strategy in turn.

    Args:
        name: Document file name, used in error messages.
        raw: The document contents.
        row_decoder: Decoder for a single row.

    Returns:
        The decoded rows in document order.

    Raises:
        InvalidArchiveError: If the document is not valid JSON, is not an
            array, or no date strategy decodes every row.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidArchiveError(f"{name} is not valid JSON: {e}") from e

    if not isinstance(data, list):
        raise InvalidArchiveError(f"{name} must contain a JSON array")

    errors: list[str] = []
    for strategy in DateStrategy:
        try:
            rows = [row_decoder(row, strategy) for row in data]
        except DecodeError as e:
            errors.append(f"{strategy.value}: {e}")
            continue
        if strategy is not DateStrategy.ISO8601:
            logger.info(f"Decoded {name} with legacy {strategy.value} dates")
        return rows

    raise InvalidArchiveError(f"{name} could not be decoded ({'; '.join(errors)})")


def decode_manifest(raw: bytes | str) -> BackupManifest:
    """
    Parse manifest.json.

    Raises:
        InvalidArchiveError: If the manifest is malformed.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidArchiveError(f"manifest.json is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InvalidArchiveError("manifest.json must contain a JSON object")

    try:
        version = _require(data, "version")
        if not isinstance(version, (str, int, float)) or isinstance(version, bool):
            raise DecodeError("'version' must be a string")
        return BackupManifest(
            version=str(version),
            app_version=str(data.get("appVersion") or "unknown"),
            backup_date=str(data.get("backupDate") or ""),
            visit_count=_count(data, "visitCount"),
            label_count=_count(data, "labelCount"),
            group_count=_count(data, "groupCount"),
            member_count=_count(data, "memberCount"),
            photo_count=_count(data, "photoCount"),
        )
    except DecodeError as e:
        raise InvalidArchiveError(f"manifest.json: {e}") from e


def check_version(manifest: BackupManifest) -> None:
    """
    Raises:
        UnsupportedVersionError: Unless the manifest is the supported schema.
    """
    if manifest.version != SUPPORTED_SCHEMA_VERSION:
        raise UnsupportedVersionError(manifest.version)


def dumps(document: Any) -> str:
    """Serialize a document the way archives store it."""
    return json.dumps(document, indent=2, ensure_ascii=False)
