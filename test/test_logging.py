import hmac
import hashlib
import json
from mintgate.core.logger import get_logger, SIGNING_KEY, PAYMENTS_PROCESSED


def test_audit_log_and_prometheus(tmp_path, monkeypatch):
    monkeypatch.setattr("mintgate.core.logger.AUDIT_FILE", tmp_path / "audit.log")
    log = get_logger("test")
    log.info("UNIT_TEST_NOISE", data=0)
    log.info("UNIT_TEST_EVENT", data=1, audit=True)
    with open(tmp_path / "audit.log") as f:
        lines = f.read().splitlines()
    assert len(lines) == 1
    payload, sig = lines[0].split("|")
    expected = hmac.new(SIGNING_KEY, payload.encode(), hashlib.sha256).hexdigest()
    assert sig == expected
    event = json.loads(payload)
    assert event["event"] == "UNIT_TEST_EVENT"
    assert "audit" not in event

    c = PAYMENTS_PROCESSED.labels("unit")
    initial = c._value.get()
    c.inc()
    assert c._value.get() == initial + 1
