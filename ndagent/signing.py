"""COSE_Sign1 envelopes for signed task dispatch and responses.

Envelopes are CBOR tag 18 structures signed with Ed25519. Protected
headers carry the issuer, timestamps, task identifiers and, depending on
direction, a task type and expiry (dispatch) or a sequence number
(response).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

HDR_ALG = 1
HDR_KID = 4
HDR_ISS = -65537
HDR_IAT = -65538
HDR_TASK_ID = -65539
HDR_DEVICE_UUID = -65540
HDR_VERSION = -65541
HDR_TASK_TYPE = -65542
HDR_SEQ = -65543
HDR_EXP = -65544

ALG_ED25519 = -8
COSE_SIGN1_TAG = 18
ENVELOPE_VERSION = 2
IAT_FRESHNESS_SECONDS = 300

PUBLIC_KEY_SIZE = 32
SEED_SIZE = 32
KID_SIZE = 16

PublicKeyLike = Union[Ed25519PublicKey, bytes]
VerifyKeyByKid = Callable[[bytes], PublicKeyLike]


class SigningError(ValueError):
    """Raised when a key or envelope cannot be decoded, built or verified."""


@dataclass
class DecodedEnvelope:
    """Verified contents of a COSE_Sign1 envelope.

    ``type`` and ``exp`` are set on dispatch envelopes, ``seq`` on
    response envelopes; the other side keeps its zero value.
    """

    payload: bytes
    alg: int = 0
    kid: bytes = b""
    iss: str = ""
    iat: int = 0
    task_id: int = 0
    device_uuid: str = ""
    version: int = 0
    type: str = ""
    exp: int = 0
    seq: int = 0


def _raw_public(pub: PublicKeyLike) -> bytes:
    if isinstance(pub, Ed25519PublicKey):
        return pub.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
    raw = bytes(pub)
    if len(raw) != PUBLIC_KEY_SIZE:
        raise ValueError(
            f"ed25519 pubkey must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}"
        )
    return raw


def _as_public_key(pub: PublicKeyLike) -> Ed25519PublicKey:
    if isinstance(pub, Ed25519PublicKey):
        return pub
    return Ed25519PublicKey.from_public_bytes(_raw_public(pub))


def kid_from_pubkey(pub: PublicKeyLike) -> bytes:
    """Return the first 16 bytes of SHA-256 over the raw public key."""
    return hashlib.sha256(_raw_public(pub)).digest()[:KID_SIZE]


def generate_keypair() -> tuple[Ed25519PublicKey, Ed25519PrivateKey]:
    """Generate a fresh Ed25519 keypair."""
    priv = Ed25519PrivateKey.generate()
    return priv.public_key(), priv


def _b64decode(b64: str, what: str) -> bytes:
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise SigningError(f"base64 decode {what}: {exc}") from exc


def private_key_from_base64(b64: str) -> Ed25519PrivateKey:
    """Decode a base64 32-byte Ed25519 seed into a private key."""
    seed = _b64decode(b64, "private key")
    if len(seed) != SEED_SIZE:
        raise SigningError(
            f"ed25519 seed must be {SEED_SIZE} bytes, got {len(seed)}"
        )
    return Ed25519PrivateKey.from_private_bytes(seed)


def public_key_from_base64(b64: str) -> Ed25519PublicKey:
    """Decode a base64 raw 32-byte Ed25519 public key."""
    raw = _b64decode(b64, "public key")
    if len(raw) != PUBLIC_KEY_SIZE:
        raise SigningError(
            f"ed25519 pubkey must be {PUBLIC_KEY_SIZE} bytes, got {len(raw)}"
        )
    return Ed25519PublicKey.from_public_bytes(raw)


def seed_from_private_key(priv: Ed25519PrivateKey) -> bytes:
    """Return the canonical 32-byte seed of a private key."""
    return priv.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


def public_key_from_private(priv: Ed25519PrivateKey) -> Ed25519PublicKey:
    """Derive the public key from a private key."""
    return priv.public_key()


def _sig_structure(protected: bytes, payload: bytes) -> bytes:
    return cbor2.dumps(["Signature1", protected, b"", payload])


def build_response_envelope(
    priv: Ed25519PrivateKey,
    kid: bytes,
    task_id: int,
    device_uuid: str,
    payload: bytes,
    seq: int,
    iat: int = 0,
) -> bytes:
    """Sign ``payload`` into a tagged COSE_Sign1 response envelope.

    ``iat`` defaults to the current time in seconds when zero.
    """
    if payload is None:
        raise SigningError("cose sign: missing payload")
    if seq < 0:
        raise SigningError(f"response seq must be non-negative, got {seq}")
    if iat == 0:
        iat = int(time.time())

    header = {
        HDR_ALG: ALG_ED25519,
        HDR_KID: bytes(kid),
        HDR_ISS: f"device:{device_uuid}",
        HDR_IAT: iat,
        HDR_TASK_ID: task_id,
        HDR_DEVICE_UUID: device_uuid,
        HDR_VERSION: ENVELOPE_VERSION,
        HDR_SEQ: seq,
    }
    protected = cbor2.dumps(header, canonical=True)
    body = bytes(payload)
    signature = priv.sign(_sig_structure(protected, body))
    message = cbor2.CBORTag(COSE_SIGN1_TAG, [protected, {}, body, signature])
    return cbor2.dumps(message)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _coerce_int(value: Any) -> int:
    if not _is_int(value):
        raise SigningError(f"not an integer: {type(value).__name__}")
    return value


def _decode_message(envelope: bytes) -> tuple[bytes, dict, bytes, bytes]:
    try:
        obj = cbor2.loads(envelope)
    except Exception as exc:
        raise SigningError(f"cose unmarshal: {exc}") from exc
    if not isinstance(obj, cbor2.CBORTag) or obj.tag != COSE_SIGN1_TAG:
        raise SigningError("cose unmarshal: invalid COSE_Sign1 object")
    value = obj.value
    if not isinstance(value, list) or len(value) != 4:
        raise SigningError("cose unmarshal: invalid COSE_Sign1 structure")
    protected, unprotected, payload, signature = value
    if not isinstance(protected, bytes):
        raise SigningError("cose unmarshal: protected header must be bytes")
    if not isinstance(unprotected, dict):
        raise SigningError("cose unmarshal: unprotected header must be a map")
    if not isinstance(payload, bytes):
        raise SigningError("cose unmarshal: missing payload")
    if not isinstance(signature, bytes) or not signature:
        raise SigningError("cose unmarshal: missing signature")
    if protected:
        try:
            header = cbor2.loads(protected)
        except Exception as exc:
            raise SigningError(f"cose unmarshal: {exc}") from exc
        if not isinstance(header, dict):
            raise SigningError("cose unmarshal: protected header must be a map")
    else:
        header = {}
    return protected, header, payload, signature


def _extract_kid(header: dict) -> bytes:
    if HDR_KID not in header:
        raise SigningError("envelope missing kid")
    kid = header[HDR_KID]
    if not isinstance(kid, bytes):
        raise SigningError(f"envelope kid wrong type: {type(kid).__name__}")
    return kid


def _header_to_decoded(header: dict, payload: bytes) -> DecodedEnvelope:
    dec = DecodedEnvelope(payload=payload)

    if HDR_ALG in header:
        alg = header[HDR_ALG]
        if not _is_int(alg):
            raise SigningError(f"alg wrong type: {type(alg).__name__}")
        dec.alg = alg

    try:
        dec.kid = _extract_kid(header)
    except SigningError:
        pass

    for label, attr, name, is_text in (
        (HDR_ISS, "iss", "iss", True),
        (HDR_IAT, "iat", "iat", False),
        (HDR_TASK_ID, "task_id", "task_id", False),
        (HDR_DEVICE_UUID, "device_uuid", "device_uuid", True),
        (HDR_VERSION, "version", "v", False),
    ):
        if label not in header:
            raise SigningError(f"envelope missing required header field: {name}")
        raw = header[label]
        if is_text:
            if not isinstance(raw, str):
                raise SigningError(
                    f"envelope {name} wrong type: {type(raw).__name__}"
                )
            setattr(dec, attr, raw)
        else:
            try:
                setattr(dec, attr, _coerce_int(raw))
            except SigningError as exc:
                raise SigningError(f"envelope {name}: {exc}") from exc

    if HDR_TASK_TYPE in header:
        raw = header[HDR_TASK_TYPE]
        if not isinstance(raw, str):
            raise SigningError(f"envelope type wrong type: {type(raw).__name__}")
        dec.type = raw
    if HDR_EXP in header:
        try:
            dec.exp = _coerce_int(header[HDR_EXP])
        except SigningError as exc:
            raise SigningError(f"envelope exp: {exc}") from exc
    if HDR_SEQ in header:
        try:
            seq = _coerce_int(header[HDR_SEQ])
        except SigningError as exc:
            raise SigningError(f"envelope seq: {exc}") from exc
        if seq < 0:
            raise SigningError(f"envelope seq must be non-negative, got {seq}")
        dec.seq = seq
    return dec


def verify_dispatch_envelope(
    envelope: bytes, lookup: VerifyKeyByKid
) -> DecodedEnvelope:
    """Verify a signed envelope and return its header fields.

    ``lookup`` maps a kid to the verifying public key and raises if the
    kid is unknown. Semantic checks beyond signature, algorithm and
    schema version are left to the caller.
    """
    protected, header, payload, signature = _decode_message(envelope)

    try:
        kid = _extract_kid(header)
    except SigningError as exc:
        raise SigningError(f"read kid: {exc}") from exc

    try:
        found = lookup(kid)
        if found is None:
            raise KeyError("no key for kid")
        pub = _as_public_key(found)
    except Exception as exc:
        raise SigningError(f"kid lookup {kid.hex()}: {exc}") from exc

    if header.get(HDR_ALG) != ALG_ED25519:
        raise SigningError("cose verify: algorithm mismatch")
    try:
        pub.verify(signature, _sig_structure(protected, payload))
    except InvalidSignature as exc:
        raise SigningError("cose verify: verification error") from exc

    dec = _header_to_decoded(header, payload)

    if dec.alg != ALG_ED25519:
        raise SigningError(
            f"envelope alg {dec.alg} unsupported (only Ed25519/-8 in v=2)"
        )
    if dec.version != ENVELOPE_VERSION:
        raise SigningError(
            f"envelope schema version {dec.version} unsupported; "
            f"this build requires v={ENVELOPE_VERSION}"
        )
    return dec