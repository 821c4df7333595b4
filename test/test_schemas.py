import pytest

from conftest import make_auth
from mintgate.core.errors import InvalidAuthorizationError
from mintgate.queue.schemas import parse_authorization


def test_signature_is_split_into_components():
    auth = parse_authorization(make_auth())
    v, r, s = auth.vrs()
    assert v == 27
    assert r == "0x" + "ab" * 32
    assert s == "0x" + "cd" * 32


def test_zero_one_recovery_id_is_normalised():
    auth = parse_authorization(make_auth(signature="0x" + "ab" * 32 + "cd" * 32 + "01"))
    assert auth.vrs()[0] == 28


def test_separate_vrs_fields():
    auth = parse_authorization(make_auth(signature=None, v=0, r="0x" + "11" * 32, s="0x" + "22" * 32))
    assert auth.vrs() == (27, "0x" + "11" * 32, "0x" + "22" * 32)


def test_payload_round_trips_wire_names():
    payload = parse_authorization(make_auth(nonce=5)).to_payload()
    assert payload["validBefore"] > payload["validAfter"] == 0
    assert payload["from"] == "0x2222222222222222222222222222222222222222"
    assert parse_authorization(payload).nonce == "0x" + f"{5:064x}"


@pytest.mark.parametrize("overrides", [
    {"nonce": "0x1234"},
    {"from": "not-an-address"},
    {"value": "0"},
])
def test_malformed_authorizations_are_rejected(overrides):
    data = make_auth()
    data.update(overrides)
    with pytest.raises(InvalidAuthorizationError):
        parse_authorization(data)


def test_short_signature_is_rejected():
    auth = parse_authorization(make_auth(signature="0x1234"))
    with pytest.raises(InvalidAuthorizationError):
        auth.vrs()
