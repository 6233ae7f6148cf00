"""
Tests for the reconciliation audit trail
"""
import json

from core.audit_log import AuditLogger
from core.models import PaymentEvidence, utcnow


class TestAuditLogger:
    def test_entries_are_jsonl(self, tmp_path):
        path = tmp_path / "audit" / "reconcile.jsonl"
        audit = AuditLogger(str(path))
        evidence = PaymentEvidence(amount=1000.0, timestamp=utcnow(), evidence_id="ev-1")

        audit.record("matched", evidence, payout_id="p-1", transaction_id=None)
        audit.record("blacklist_resolved", None, blacklist_id="b-1")

        lines = path.read_text(encoding="utf-8").splitlines()
        first = json.loads(lines[0])
        assert first["decision"] == "matched"
        assert first["evidence"]["evidence_id"] == "ev-1"
        assert first["payout_id"] == "p-1"
        assert "transaction_id" not in first
        assert "evidence" not in json.loads(lines[1])

    def test_read_entries_newest_first(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))
        for decision in ("unmatched", "ambiguous", "matched"):
            audit.record(decision)

        assert [e["decision"] for e in audit.read_entries(2)] == ["matched", "ambiguous"]
        assert [e["decision"] for e in audit.recent(3)] == ["matched", "ambiguous", "unmatched"]

    def test_read_skips_corrupt_lines(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        audit = AuditLogger(str(path))
        audit.record("matched")
        with open(path, "a", encoding="utf-8") as f:
            f.write("{not json\n")

        assert [e["decision"] for e in audit.read_entries()] == ["matched"]

    def test_missing_file_reads_empty(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))

        assert audit.read_entries() == []

    def test_dict_evidence_accepted(self, tmp_path):
        audit = AuditLogger(str(tmp_path / "audit.jsonl"))

        entry = audit.record("unmatched", {"amount": 5})

        assert entry["evidence"] == {"amount": 5}
