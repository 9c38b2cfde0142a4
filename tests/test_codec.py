"""
Tests for the archive document codec.

Uses Python's unittest module.
Tests date strategies, legacy field names, strict row decoding and the
manifest version gate.
"""

from __future__ import annotations

import json
import unittest
from datetime import UTC, datetime, timedelta

from factories import manifest_doc, visit_row

from waypost.backup.codec import (
    REFERENCE_EPOCH,
    SUPPORTED_SCHEMA_VERSION,
    DateStrategy,
    DecodeError,
    check_version,
    decode_date,
    decode_document,
    decode_manifest,
    decode_taxon,
    decode_visit,
    dumps,
    encode_date,
    encode_visit,
)
from waypost.backup.errors import InvalidArchiveError, UnsupportedVersionError


class TestDates(unittest.TestCase):
    """Tests for date encoding and decoding."""

    def test_encode_uses_z_suffix(self) -> None:
        value = datetime(2024, 5, 17, 9, 30, tzinfo=UTC)
        self.assertEqual(encode_date(value), "2024-05-17T09:30:00Z")

    def test_iso_round_trip_keeps_microseconds(self) -> None:
        value = datetime(2024, 5, 17, 9, 30, 1, 250000, tzinfo=UTC)
        self.assertEqual(decode_date(encode_date(value), DateStrategy.ISO8601), value)

    def test_iso_with_offset_converted_to_utc(self) -> None:
        decoded = decode_date("2024-05-17T11:30:00+02:00", DateStrategy.ISO8601)
        self.assertEqual(decoded, datetime(2024, 5, 17, 9, 30, tzinfo=UTC))

    def test_reference_seconds(self) -> None:
        """Test numeric dates count seconds from 2001-01-01 UTC."""
        self.assertEqual(REFERENCE_EPOCH, datetime(2001, 1, 1, tzinfo=UTC))
        decoded = decode_date(86400.5, DateStrategy.REFERENCE_SECONDS)
        self.assertEqual(decoded, REFERENCE_EPOCH + timedelta(days=1, milliseconds=500))

    def test_strategy_mismatch(self) -> None:
        with self.assertRaises(DecodeError):
            decode_date(12345, DateStrategy.ISO8601)
        with self.assertRaises(DecodeError):
            decode_date("2024-05-17T09:30:00Z", DateStrategy.REFERENCE_SECONDS)
        with self.assertRaises(DecodeError):
            decode_date(True, DateStrategy.REFERENCE_SECONDS)


class TestVisitRows(unittest.TestCase):
    """Tests for visits.json row decoding."""

    def test_decode_full_row(self) -> None:
        row = visit_row(
            1,
            labelIds=["L1"],
            groupId="G1",
            memberIds=["M1", "M2"],
            photoPaths=["b.jpg", "a.jpg"],
            comment="note",
        )
        visit = decode_visit(row, DateStrategy.ISO8601)

        self.assertEqual(visit.id, "VISIT-0001")
        self.assertEqual(visit.label_ids, ["L1"])
        self.assertEqual(visit.group_id, "G1")
        self.assertEqual(visit.member_ids, ["M1", "M2"])
        self.assertEqual(visit.photo_paths, ["b.jpg", "a.jpg"])
        self.assertEqual(visit.comment, "note")
        self.assertEqual(visit.integrity_payload_hash_hex, "ab" * 32)

    def test_encode_decode_round_trip(self) -> None:
        original = decode_visit(visit_row(2, photoPaths=["x.jpg"]), DateStrategy.ISO8601)
        again = decode_visit(json.loads(dumps(encode_visit(original))), DateStrategy.ISO8601)
        self.assertEqual(again, original)

    def test_optional_fields_may_be_absent(self) -> None:
        """Test rows from older exporters without optional keys decode."""
        row = visit_row(1)
        for key in ("horizontalAccuracy", "isSimulatedBySoftware", "labelIds", "photoPaths", "title"):
            del row[key]
        visit = decode_visit(row, DateStrategy.ISO8601)
        self.assertIsNone(visit.horizontal_accuracy)
        self.assertEqual(visit.label_ids, [])
        self.assertEqual(visit.photo_paths, [])

    def test_legacy_integrity_keys(self) -> None:
        """Test the old integrity key names are accepted."""
        row = visit_row(1)
        row["integritySigDER"] = row.pop("integritySignatureBase64")
        row["integrityPubRaw"] = row.pop("integrityPublicKeyBase64")
        row["integrityPayloadHash"] = row.pop("integrityPayloadHashHex")

        visit = decode_visit(row, DateStrategy.ISO8601)
        self.assertEqual(visit.integrity_signature_base64, "c2ln")
        self.assertEqual(visit.integrity_public_key_base64, "cHVi")

        encoded = encode_visit(visit)
        self.assertIn("integritySignatureBase64", encoded)
        self.assertNotIn("integritySigDER", encoded)

    def test_missing_required_key(self) -> None:
        row = visit_row(1)
        del row["latitude"]
        with self.assertRaises(DecodeError):
            decode_visit(row, DateStrategy.ISO8601)

    def test_wrong_type(self) -> None:
        with self.assertRaises(DecodeError):
            decode_visit(visit_row(1, labelIds="L1"), DateStrategy.ISO8601)
        with self.assertRaises(DecodeError):
            decode_visit(visit_row(1, latitude="48.2"), DateStrategy.ISO8601)

    def test_taxon_blank_name_allowed(self) -> None:
        """Test blank names decode so the importer can skip them."""
        self.assertEqual(decode_taxon({"id": "L1", "name": ""}, DateStrategy.ISO8601).name, "")
        self.assertEqual(decode_taxon({"id": "L1", "name": None}, DateStrategy.ISO8601).name, "")


class TestDocuments(unittest.TestCase):
    """Tests for whole-document decoding with strategy fallback."""

    def test_iso_document(self) -> None:
        raw = json.dumps([visit_row(1), visit_row(2)])
        rows = decode_document("visits.json", raw, decode_visit)
        self.assertEqual([row.id for row in rows], ["VISIT-0001", "VISIT-0002"])

    def test_numeric_document_falls_back(self) -> None:
        """Test a document with numeric dates decodes with the legacy strategy."""
        raw = json.dumps(
            [visit_row(1, timestampUTC=737_625_600.0, integrityCreatedAtUTC=737_625_601.0)]
        )
        rows = decode_document("visits.json", raw, decode_visit)
        self.assertEqual(
            rows[0].timestamp_utc, REFERENCE_EPOCH + timedelta(seconds=737_625_600)
        )

    def test_mixed_document_rejected(self) -> None:
        """Test a document that fits neither strategy is an invalid archive."""
        raw = json.dumps([visit_row(1), visit_row(2, timestampUTC=1000.0)])
        with self.assertRaises(InvalidArchiveError):
            decode_document("visits.json", raw, decode_visit)

    def test_not_json(self) -> None:
        with self.assertRaises(InvalidArchiveError):
            decode_document("labels.json", b"{not json", decode_taxon)

    def test_not_an_array(self) -> None:
        with self.assertRaises(InvalidArchiveError):
            decode_document("labels.json", json.dumps({"id": "L1"}), decode_taxon)

    def test_empty_array(self) -> None:
        self.assertEqual(decode_document("groups.json", "[]", decode_taxon), [])


class TestManifest(unittest.TestCase):
    """Tests for manifest parsing and the version gate."""

    def test_decode_manifest(self) -> None:
        manifest = decode_manifest(json.dumps(manifest_doc(visits=3, photos=2)))
        self.assertEqual(manifest.version, SUPPORTED_SCHEMA_VERSION)
        self.assertEqual(manifest.visit_count, 3)
        self.assertEqual(manifest.photo_count, 2)
        self.assertEqual(manifest.app_version, "0.0.9")

    def test_malformed_manifest(self) -> None:
        doc = manifest_doc()
        del doc["visitCount"]
        with self.assertRaises(InvalidArchiveError):
            decode_manifest(json.dumps(doc))
        with self.assertRaises(InvalidArchiveError):
            decode_manifest("[]")

    def test_supported_version_passes(self) -> None:
        check_version(decode_manifest(json.dumps(manifest_doc())))

    def test_unsupported_version(self) -> None:
        """Test any other version is rejected with the actual value."""
        manifest = decode_manifest(json.dumps(manifest_doc(version="2.0")))
        with self.assertRaises(UnsupportedVersionError) as ctx:
            check_version(manifest)
        self.assertEqual(ctx.exception.actual, "2.0")
        self.assertEqual(ctx.exception.code, "unsupported_version")


if __name__ == "__main__":
    unittest.main()
