"""Unit Tests for the Hash-Chained Audit Log

Self-Explanatory: Linkage, signatures, tamper detection, append-only triggers.
Why: Any edit to history must be detectable; entries must stay verifiable.
How: Real SQLite file per test; triggers dropped where a test forges a row.
Run: pytest tests/governance/ -v
"""
import threading
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from consentbridge.errors import NotFoundError
from consentbridge.governance.audit_chain import GENESIS_HASH, compute_event_hash
from consentbridge.models import ActorType


@pytest.fixture
def chain(container):
    return container.audit_chain


def _drop_triggers(chain):
    with chain.engine.connect() as conn:
        conn.execute(text("DROP TRIGGER audit_logs_no_update"))
        conn.execute(text("DROP TRIGGER audit_logs_no_delete"))
        conn.commit()


def _append_many(chain, count):
    return [
        chain.append(
            "consent_created",
            ActorType.CUSTOMER,
            f"user-{i}",
            consent_id=f"consent-{i}",
            action_details={"allowedFields": ["name", "email"], "n": i},
        )
        for i in range(count)
    ]


def test_first_entry_links_to_genesis(chain):
    entry = chain.append("partner_registered", ActorType.ADMIN, "admin-1", partner_id="PID-1")
    assert entry.previous_hash == GENESIS_HASH
    assert entry.event_hash == compute_event_hash(entry.hash_material())
    assert chain.signature_service.verify(entry.event_hash, entry.digital_signature)


def test_entries_link_to_predecessor(chain):
    entries = _append_many(chain, 3)
    assert entries[1].previous_hash == entries[0].event_hash
    assert entries[2].previous_hash == entries[1].event_hash


def test_verify_range(chain):
    entries = _append_many(chain, 5)
    result = chain.verify_chain_integrity(entries[0].log_id, entries[-1].log_id)
    assert result["valid"] is True

    # Reversed bounds select the same range
    assert chain.verify_chain_integrity(entries[-1].log_id, entries[0].log_id)["valid"] is True


def test_single_entry_range(chain):
    entry = _append_many(chain, 1)[0]
    assert chain.verify_chain_integrity(entry.log_id, entry.log_id)["valid"] is True


def test_unknown_log_id(chain):
    entry = _append_many(chain, 1)[0]
    with pytest.raises(NotFoundError):
        chain.verify_chain_integrity(entry.log_id, "missing")


def test_update_rejected_by_trigger(chain):
    entry = _append_many(chain, 1)[0]
    with pytest.raises(DBAPIError):
        with chain.engine.begin() as conn:
            conn.execute(
                text("UPDATE audit_logs SET actor_id = 'attacker' WHERE log_id = :id"),
                {"id": entry.log_id},
            )


def test_delete_rejected_by_trigger(chain):
    _append_many(chain, 2)
    with pytest.raises(DBAPIError):
        with chain.engine.begin() as conn:
            conn.execute(text("DELETE FROM audit_logs"))


def test_tampered_details_detected(chain):
    entries = _append_many(chain, 3)
    _drop_triggers(chain)
    with chain.engine.begin() as conn:
        conn.execute(
            text("UPDATE audit_logs SET action_details = :d WHERE log_id = :id"),
            {"d": '{"allowedFields": ["pan"], "n": 1}', "id": entries[1].log_id},
        )

    result = chain.verify_chain_integrity(entries[0].log_id, entries[-1].log_id)
    assert result["valid"] is False
    assert entries[1].log_id in result["message"]


def test_rehashed_entry_fails_signature(chain):
    entries = _append_many(chain, 2)
    forged = entries[1].model_copy(update={"actor_id": "attacker"})
    forged_hash = compute_event_hash(forged.hash_material())
    _drop_triggers(chain)
    with chain.engine.begin() as conn:
        conn.execute(
            text("UPDATE audit_logs SET actor_id = 'attacker', event_hash = :h WHERE log_id = :id"),
            {"h": forged_hash, "id": entries[1].log_id},
        )

    result = chain.verify_chain_integrity(entries[0].log_id, entries[1].log_id)
    assert result["valid"] is False
    assert "signature" in result["message"]


def test_broken_linkage_detected(chain):
    entries = _append_many(chain, 3)
    # Well-formed, signed entry whose previous_hash skips its predecessor
    relinked = entries[2].model_copy(update={"previous_hash": entries[0].event_hash})
    relinked_hash = compute_event_hash(relinked.hash_material())
    relinked = relinked.model_copy(update={
        "event_hash": relinked_hash,
        "digital_signature": chain.signature_service.sign(relinked_hash),
    })

    result = chain.verify_entries([entries[0], entries[1], relinked])
    assert result["valid"] is False
    assert "Chain broken" in result["message"]


def test_record_never_raises(chain, mocker):
    mocker.patch.object(chain, "append", side_effect=RuntimeError("database unavailable"))
    assert chain.record("consent_revoked", ActorType.CUSTOMER, "user-1") is None


def test_concurrent_appends_keep_single_chain(chain):
    def writer(n):
        for i in range(5):
            chain.append("data_request", ActorType.PARTNER, f"PID-{n}", action_details={"i": i})

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert chain.verify_tail(100)["valid"] is True
    _, pagination = chain.query()
    assert pagination["totalLogs"] == 20


def test_query_filters_and_pagination(chain, clock):
    chain.append("partner_registered", ActorType.ADMIN, "admin-1", partner_id="PID-1")
    clock.advance(minutes=5)
    _append_many(chain, 4)

    entries, pagination = chain.query({"event_type": "consent_created"}, limit=3, page=1)
    assert len(entries) == 3
    assert pagination == {"totalLogs": 4, "totalPages": 2, "currentPage": 1, "limit": 3}
    # Newest first
    assert entries[0].seq > entries[1].seq

    recent, _ = chain.query({"start_date": clock.now - timedelta(minutes=1)})
    assert {e.event_type for e in recent} == {"consent_created"}

    assert chain.integrity_for(entries)["valid"] is True


def test_wire_format(chain):
    wire = _append_many(chain, 1)[0].to_wire()
    assert {"logId", "eventType", "actorType", "previousHash", "eventHash", "digitalSignature", "createdAt"} <= set(wire)
    assert wire["actorType"] == "customer"
