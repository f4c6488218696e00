"""Tests for the audit log."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from hierarchy_authz.db.base import utcnow
from hierarchy_authz.security.audit import AuditEvent, AuditFilter, AuditLog
from hierarchy_authz.security.errors import SubsystemUnavailable


def test_event_validates_operation_and_target():
    with pytest.raises(ValueError):
        AuditEvent(operation="delete", target_type="policy", result="success", performed_by="a")
    with pytest.raises(ValueError):
        AuditEvent(operation="grant", target_type="table", result="success", performed_by="a")


def test_append_and_query(audit):
    audit.append(AuditEvent("grant", "policy", "success", "admin-1", subject_type="user", subject_id="u1"))
    audit.append(AuditEvent("revoke", "role", "not_found", "admin-2", role_name="member"))
    rows, total = audit.query()
    assert total == 2
    assert {r.operation for r in rows} == {"grant", "revoke"}

    rows, total = audit.query(AuditFilter(target_type="role"))
    assert total == 1
    assert rows[0].role_name == "member"


def test_query_time_window(audit):
    now = utcnow()
    audit.append(AuditEvent("grant", "policy", "success", "a", timestamp=now - timedelta(days=2)))
    audit.append(AuditEvent("grant", "policy", "success", "a", timestamp=now))
    _, total = audit.query(AuditFilter(since=now - timedelta(days=1)))
    assert total == 1
    _, total = audit.query(AuditFilter(until=now - timedelta(days=1)))
    assert total == 1


def test_query_limit_is_clamped():
    sink = MagicMock()
    sink.query.return_value = ([], 0)
    AuditLog(sink).query(limit=10_000, offset=-3)
    _, limit, offset = sink.query.call_args.args
    assert (limit, offset) == (AuditLog.MAX_LIMIT, 0)


def test_append_never_raises(caplog):
    sink = MagicMock()
    sink.write.side_effect = OperationalError("INSERT", {}, Exception("locked"))
    AuditLog(sink).append(AuditEvent("grant", "policy", "success", "a"))
    assert "Audit write failed" in caplog.text


def test_query_failure_is_subsystem_unavailable():
    sink = MagicMock()
    sink.query.side_effect = OperationalError("SELECT", {}, Exception("locked"))
    with pytest.raises(SubsystemUnavailable):
        AuditLog(sink).query()


def test_decisions_recorded_only_when_enabled():
    sink = MagicMock()
    AuditLog(sink).record_decision("u1", "a:b", "c", True, "user:u1")
    sink.write.assert_not_called()
    AuditLog(sink, record_decisions=True).record_decision("u1", "a:b", "c", True, "user:u1")
    event = sink.write.call_args.args[0]
    assert (event.operation, event.target_type, event.result) == ("check", "permission", "allowed")
    assert event.reason == "granted by user:u1"
