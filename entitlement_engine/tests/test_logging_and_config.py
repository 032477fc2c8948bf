import json
import logging

import pytest

from entitlement_engine.core.config import Settings, validate_config
from entitlement_engine.core.logging import (
    ContextFilter,
    JsonFormatter,
    PrettyFormatter,
    configure_logging,
    latency_bucket_ms,
    request_id_ctx_var,
    tenant_id_ctx_var,
)
from entitlement_engine.core.middleware.request_context import tenant_from_path


def _record(msg="[ledger] GRANTED", **extra):
    record = logging.LogRecord("entitlements.ledger", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    record = _record(tenant_id="gym-1", resource_key="trainer", request_id="req-9")
    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "[ledger] GRANTED"
    assert payload["logger"] == "entitlements.ledger"
    assert payload["level"] == "INFO"
    assert payload["request_id"] == "req-9"
    assert payload["tenant_id"] == "gym-1"
    assert payload["resource_key"] == "trainer"
    assert payload["timestamp"].endswith("Z")


def test_pretty_formatter_lists_fields():
    line = PrettyFormatter().format(_record(tenant_id="gym-1", request_id="req-9"))
    assert "[entitlements.ledger]" in line
    assert "[rid=req-9]" in line
    assert "[tenant=gym-1]" in line


def test_pretty_formatter_omits_empty_context():
    line = PrettyFormatter().format(_record(request_id=None, tenant_id=None, resource_key="trainer"))
    assert "[rid=" not in line
    assert "[tenant=" not in line
    assert line.endswith("[ledger] GRANTED resource_key=trainer")


def test_context_filter_reads_context():
    rid_token = request_id_ctx_var.set("req-ctx")
    tenant_token = tenant_id_ctx_var.set("gym-7")
    try:
        record = _record()
        ContextFilter().filter(record)
    finally:
        tenant_id_ctx_var.reset(tenant_token)
        request_id_ctx_var.reset(rid_token)
    assert record.request_id == "req-ctx"
    assert record.tenant_id == "gym-7"


def test_context_filter_keeps_explicit_values():
    token = tenant_id_ctx_var.set("gym-7")
    try:
        record = _record(tenant_id="gym-1")
        ContextFilter().filter(record)
    finally:
        tenant_id_ctx_var.reset(token)
    assert record.tenant_id == "gym-1"


@pytest.mark.parametrize(
    "path,tenant",
    [
        ("/v1/tenants/gym-1/consume", "gym-1"),
        ("/v1/admin/tenants/gym-2/overlay", "gym-2"),
        ("/v1/tenants/gym-3", "gym-3"),
        ("/v1/plans", None),
        ("/health", None),
    ],
)
def test_tenant_from_path(path, tenant):
    assert tenant_from_path(path) == tenant


def test_configure_logging_picks_formatter():
    logger = logging.getLogger("entitlements")
    configure_logging("production")
    assert isinstance(logger.handlers[0].formatter, JsonFormatter)
    configure_logging("development")
    assert isinstance(logger.handlers[0].formatter, PrettyFormatter)


@pytest.mark.parametrize(
    "latency,bucket",
    [(None, "unknown"), (5, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (750, "500-1000ms"), (1500, ">=1000ms")],
)
def test_latency_buckets(latency, bucket):
    assert latency_bucket_ms(latency) == bucket


def test_validate_config_ok():
    assert validate_config(strict=True, settings_obj=Settings(ENV="test", DATABASE_URL=None)) is True


def test_validate_config_strict_raises():
    cfg = Settings(ENV="production", DATABASE_URL=None)
    with pytest.raises(RuntimeError) as exc:
        validate_config(strict=True, settings_obj=cfg)
    assert "DATABASE_URL" in str(exc.value)


def test_validate_config_warns(caplog):
    cfg = Settings(ENV="test", RATE_LIMIT_BACKEND="memcached", RESERVATION_TTL_SECONDS=0)
    with caplog.at_level(logging.WARNING, logger="entitlements"):
        assert validate_config(strict=False, settings_obj=cfg) is False
    assert "RATE_LIMIT_BACKEND" in caplog.text
    assert "RESERVATION_TTL_SECONDS" in caplog.text


def test_validate_config_rejects_unknown_log_level():
    cfg = Settings(ENV="test", LOG_LEVEL="chatty")
    with pytest.raises(RuntimeError) as exc:
        validate_config(strict=True, settings_obj=cfg)
    assert "LOG_LEVEL" in str(exc.value)


def test_configure_logging_level():
    logger = logging.getLogger("entitlements")
    configure_logging("development", "debug")
    assert logger.level == logging.DEBUG
    configure_logging("development", "chatty")
    assert logger.level == logging.INFO
