"""Tests for audit metadata sanitization and sinks."""

from unittest.mock import patch

from gatehouse.service import audit as audit_actions
from gatehouse.service.audit import (
    REDACTED_PLACEHOLDER,
    SENSITIVE_PLACEHOLDER,
    LoggingAuditLog,
    MemoryAuditLog,
    sanitize_metadata,
)


class TestSanitize:
    def test_safe_keys_pass_through(self):
        meta = {"username": "alice", "role": "editor", "method": "local"}

        assert sanitize_metadata(meta) == meta

    def test_sensitive_keys_redacted(self):
        meta = {
            "password": "hunter2",
            "bind_password": "svc",
            "access_token": "abc.def.ghi",
            "clientSecret": "s",
        }

        assert sanitize_metadata(meta) == {k: SENSITIVE_PLACEHOLDER for k in meta}

    def test_unknown_scalars_redacted(self):
        assert sanitize_metadata({"ip_address": "10.0.0.1"}) == {
            "ip_address": REDACTED_PLACEHOLDER
        }

    def test_nested_containers_walked(self):
        meta = {"changes": [{"role": "viewer", "section": "settings", "password": "x"}]}

        assert sanitize_metadata(meta) == {
            "changes": [
                {"role": "viewer", "section": "settings", "password": SENSITIVE_PLACEHOLDER}
            ]
        }

    def test_depth_limited(self):
        deep = {"changes": {"changes": {"changes": {"changes": {"changes": {"changes": 1}}}}}}

        flattened = repr(sanitize_metadata(deep))

        assert "MAX_DEPTH" in flattened


class TestSinks:
    def test_memory_log_records_sanitized_entries(self):
        log = MemoryAuditLog()

        entry = log.record(
            audit_actions.AUTH_LOGIN,
            target_type="user",
            target_id="u1",
            result=audit_actions.SUCCESS,
            metadata={"username": "alice", "password": "hunter2"},
        )

        assert log.records == [entry]
        assert entry.metadata["password"] == SENSITIVE_PLACEHOLDER
        assert log.actions() == [audit_actions.AUTH_LOGIN]

    def test_logging_log_emits_event(self):
        log = LoggingAuditLog()

        with patch.object(log, "logger") as logger:
            log.record(
                audit_actions.USER_CREATE,
                target_type="user",
                target_id="u1",
                result=audit_actions.SUCCESS,
                metadata={"token": "abc"},
            )

        logger.info.assert_called_once()
        args, kwargs = logger.info.call_args
        assert args == ("audit_event",)
        assert kwargs["metadata"] == {"token": SENSITIVE_PLACEHOLDER}
