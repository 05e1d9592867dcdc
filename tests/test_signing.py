import base64
import time

import cbor2
import pytest

from ndagent.signing import (
    ALG_ED25519,
    ENVELOPE_VERSION,
    HDR_ALG,
    HDR_DEVICE_UUID,
    HDR_EXP,
    HDR_ISS,
    HDR_SEQ,
    HDR_TASK_TYPE,
    HDR_VERSION,
    DecodedEnvelope,
    SigningError,
    build_response_envelope,
    generate_keypair,
    kid_from_pubkey,
    private_key_from_base64,
    public_key_from_base64,
    public_key_from_private,
    seed_from_private_key,
    verify_dispatch_envelope,
)
from cryptography.hazmat.primitives import serialization

DEVICE_UUID = "00000000-0000-0000-0000-000000000001"

# RFC 8032 section 7.1, test 1.
RFC_SEED_HEX = "9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60"
RFC_PUB_HEX = "d75a980182b10ab7d54bfed3c964073a0ee172f3daa62325af021a68f707511a"


def _raw(pub):
    return pub.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


@pytest.fixture
def keys():
    pub, priv = generate_keypair()
    return pub, priv, kid_from_pubkey(pub)


def _lookup_for(kid, pub):
    def lookup(requested):
        if requested != kid:
            raise KeyError("unknown kid")
        return pub

    return lookup


def _resign(priv, envelope, mutate):
    tag = cbor2.loads(envelope)
    protected, unprotected, payload, _ = tag.value
    header = cbor2.loads(protected)
    mutate(header)
    new_protected = cbor2.dumps(header, canonical=True)
    signature = priv.sign(cbor2.dumps(["Signature1", new_protected, b"", payload]))
    return cbor2.dumps(cbor2.CBORTag(18, [new_protected, unprotected, payload, signature]))


def test_rfc8032_seed_derives_known_public_key():
    b64 = base64.b64encode(bytes.fromhex(RFC_SEED_HEX)).decode()
    priv = private_key_from_base64(b64)
    assert _raw(public_key_from_private(priv)).hex() == RFC_PUB_HEX
    assert seed_from_private_key(priv).hex() == RFC_SEED_HEX


def test_public_key_from_base64_roundtrip():
    b64 = base64.b64encode(bytes.fromhex(RFC_PUB_HEX)).decode()
    assert _raw(public_key_from_base64(b64)).hex() == RFC_PUB_HEX


def test_seed_roundtrip_through_base64(keys):
    pub, priv, _ = keys
    seed = seed_from_private_key(priv)
    assert len(seed) == 32
    restored = private_key_from_base64(base64.b64encode(seed).decode())
    assert _raw(public_key_from_private(restored)) == _raw(pub)


@pytest.mark.parametrize("size", [16, 31, 33, 64])
def test_private_key_wrong_length_rejected(size):
    with pytest.raises(SigningError, match="seed must be 32 bytes"):
        private_key_from_base64(base64.b64encode(b"\x01" * size).decode())


def test_public_key_wrong_length_rejected():
    with pytest.raises(SigningError, match="pubkey must be 32 bytes"):
        public_key_from_base64(base64.b64encode(b"\x01" * 31).decode())


def test_invalid_base64_rejected():
    with pytest.raises(SigningError, match="base64 decode private key"):
        private_key_from_base64("this is not base64!")


def test_kid_properties(keys):
    pub, _, kid = keys
    assert len(kid) == 16
    assert kid_from_pubkey(_raw(pub)) == kid
    other_pub, _ = generate_keypair()
    assert kid_from_pubkey(other_pub) != kid


def test_kid_rejects_wrong_length():
    with pytest.raises(ValueError):
        kid_from_pubkey(b"\x00" * 10)


def test_envelope_wire_structure(keys):
    _, priv, kid = keys
    env = build_response_envelope(priv, kid, 7, DEVICE_UUID, b"hello", 3, 1700000000)
    tag = cbor2.loads(env)
    assert tag.tag == 18
    protected, unprotected, payload, signature = tag.value
    assert unprotected == {}
    assert payload == b"hello"
    assert len(signature) == 64
    header = cbor2.loads(protected)
    assert header[HDR_ALG] == -8
    assert header[HDR_VERSION] == 2
    assert header[HDR_SEQ] == 3
    assert header[HDR_ISS] == f"device:{DEVICE_UUID}"


def test_build_and_verify_roundtrip(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 42, DEVICE_UUID, b"payload", 9, 1700000000)
    dec = verify_dispatch_envelope(env, _lookup_for(kid, pub))
    assert dec == DecodedEnvelope(
        payload=b"payload",
        alg=ALG_ED25519,
        kid=kid,
        iss=f"device:{DEVICE_UUID}",
        iat=1700000000,
        task_id=42,
        device_uuid=DEVICE_UUID,
        version=ENVELOPE_VERSION,
        seq=9,
    )


def test_lookup_may_return_raw_bytes(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    dec = verify_dispatch_envelope(env, lambda k: _raw(pub))
    assert dec.payload == b"x"


def test_iat_defaults_to_now(keys):
    pub, priv, kid = keys
    before = int(time.time())
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"", 1, 0)
    after = int(time.time())
    dec = verify_dispatch_envelope(env, _lookup_for(kid, pub))
    assert before <= dec.iat <= after
    assert dec.payload == b""


def test_negative_seq_rejected_on_build(keys):
    _, priv, kid = keys
    with pytest.raises(SigningError):
        build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", -1, 1700000000)


def test_tampered_payload_fails(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"original", 1, 1700000000)
    tag = cbor2.loads(env)
    tag.value[2] = b"modified"
    with pytest.raises(SigningError, match="cose verify"):
        verify_dispatch_envelope(cbor2.dumps(tag), _lookup_for(kid, pub))


def test_wrong_key_fails(keys):
    _, priv, kid = keys
    other_pub, _ = generate_keypair()
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    with pytest.raises(SigningError, match="cose verify"):
        verify_dispatch_envelope(env, lambda k: other_pub)


def test_unknown_kid_reports_hex(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    with pytest.raises(SigningError, match=f"kid lookup {kid.hex()}"):
        verify_dispatch_envelope(env, _lookup_for(b"\x00" * 16, pub))


def test_garbage_envelope_rejected():
    with pytest.raises(SigningError, match="cose unmarshal"):
        verify_dispatch_envelope(b"\xff\x00garbage", lambda k: None)


def test_untagged_envelope_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    untagged = cbor2.dumps(cbor2.loads(env).value)
    with pytest.raises(SigningError, match="cose unmarshal"):
        verify_dispatch_envelope(untagged, _lookup_for(kid, pub))


def test_missing_kid_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.pop(4))
    with pytest.raises(SigningError, match="missing kid"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_version_mismatch_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.__setitem__(HDR_VERSION, 1))
    with pytest.raises(SigningError, match="schema version 1 unsupported"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_algorithm_mismatch_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.__setitem__(HDR_ALG, -7))
    with pytest.raises(SigningError):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_missing_required_field_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.pop(HDR_DEVICE_UUID))
    with pytest.raises(SigningError, match="missing required header field: device_uuid"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_wrong_type_iss_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.__setitem__(HDR_ISS, 5))
    with pytest.raises(SigningError, match="iss wrong type"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_negative_seq_rejected_on_verify(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.__setitem__(HDR_SEQ, -5))
    with pytest.raises(SigningError, match="seq must be non-negative"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))


def test_dispatch_fields_decoded(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 11, DEVICE_UUID, b"cmd", 1, 1700000000)

    def to_dispatch(header):
        header.pop(HDR_SEQ)
        header[HDR_ISS] = "ndmanager"
        header[HDR_TASK_TYPE] = "ping"
        header[HDR_EXP] = 1700000300

    env = _resign(priv, env, to_dispatch)
    dec = verify_dispatch_envelope(env, _lookup_for(kid, pub))
    assert dec.iss == "ndmanager"
    assert dec.type == "ping"
    assert dec.exp == 1700000300
    assert dec.seq == 0
    assert dec.task_id == 11


def test_wrong_type_task_type_rejected(keys):
    pub, priv, kid = keys
    env = build_response_envelope(priv, kid, 1, DEVICE_UUID, b"x", 1, 1700000000)
    env = _resign(priv, env, lambda h: h.__setitem__(HDR_TASK_TYPE, 3))
    with pytest.raises(SigningError, match="type wrong type"):
        verify_dispatch_envelope(env, _lookup_for(kid, pub))