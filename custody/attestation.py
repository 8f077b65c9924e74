"""custody.attestation

Signed provenance reports: a portable, verifiable snapshot of one product's
record and custody history.

Profile:
- issuers are identified by `did:key` (Ed25519 only)
- a proof is a compact JSON object carrying a raw Ed25519 signature encoded as
  base64url in `jws` (no JOSE header)
- the signing input is the canonical JSON of the report with `proof` removed,
  so several issuers can co-sign the same report
- report shape is checked against `schemas/provenance-report.schema.json`
"""

from __future__ import annotations

import base64
import hmac
import json
import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from jsonschema import Draft202012Validator

from custody.canonical import canonicalize, coerce_json_types, format_timestamp, now_rfc3339
from custody.observability import RegistryLayer, get_logger

logger = get_logger("attestation", RegistryLayer.ATTESTATION)

PROOF_TYPE = "CustodyEd25519Signature2025"
_ALLOWED_PROOF_PURPOSES = {"assertionMethod"}
_ED25519_MULTICODEC = bytes([0xED, 0x01])

_RFC3339_Z_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$")
_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")


# ---------------------------------------------------------------------------
# Encodings
# ---------------------------------------------------------------------------

B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58encode(data: bytes) -> str:
    n_pad = len(data) - len(data.lstrip(b"\x00"))
    num = int.from_bytes(data, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0:1] * n_pad)
    out.reverse()
    return out.decode("ascii")


def b58decode(text: str) -> bytes:
    raw = text.encode("ascii")
    num = 0
    for c in raw:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(raw) - len(raw.lstrip(B58_ALPHABET[0:1]))
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + body


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    pad = "=" * ((4 - len(text) % 4) % 4)
    return base64.urlsafe_b64decode((text + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# Keys and did:key
# ---------------------------------------------------------------------------


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def did_key_from_public_key(public_key: Ed25519PublicKey) -> str:
    return "did:key:z" + b58encode(_ED25519_MULTICODEC + _raw_public_bytes(public_key))


def public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a base58btc ``did:key`` carrying an Ed25519 public key."""
    if not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... (base58btc) identifiers are supported")
    decoded = b58decode(did[len("did:key:z"):])
    if not decoded.startswith(_ED25519_MULTICODEC):
        raise ValueError("did:key multicodec prefix is not Ed25519")
    raw = decoded[len(_ED25519_MULTICODEC):]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def verification_method_for(private_key: Ed25519PrivateKey, kid: str = "key-1") -> str:
    return f"{did_key_from_public_key(private_key.public_key())}#{kid}"


def generate_ed25519_jwk(kid: str = "key-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair."""
    private_key = Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(_raw_public_bytes(private_key.public_key())),
        "d": b64url_encode(private_bytes),
        "kid": kid,
    }


def load_private_key_from_jwk(jwk: Dict[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Load an OKP/Ed25519 private JWK. Returns (private_key, verification_method)."""
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")
    d = jwk.get("d")
    if not d:
        raise ValueError("JWK must include the private member 'd'")

    private_key = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    x = jwk.get("x")
    if x and b64url_decode(x) != _raw_public_bytes(private_key.public_key()):
        raise ValueError("JWK public member 'x' does not match private key")

    kid = str(jwk.get("kid") or "key-1").strip() or "key-1"
    return private_key, verification_method_for(private_key, kid)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def build_provenance_report(
    product: Any,
    history: Iterable[Any],
    *,
    head_digest: str,
    report_type: str = "ProductProvenanceReport",
    issued_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Assemble a JSON-compatible report from a product and its history steps."""
    steps = [step.to_dict() for step in history]
    report = {
        "type": report_type,
        "issuedAt": format_timestamp(issued_at) if issued_at else now_rfc3339(),
        "product": product.to_dict(),
        "history": steps,
        "history_length": len(steps),
        "head_digest": head_digest,
    }
    return coerce_json_types(report)


def signing_input(report: Dict[str, Any]) -> bytes:
    return canonicalize({k: v for k, v in report.items() if k != "proof"})


@dataclass
class ProofResult:
    verification_method: str
    ok: bool
    error: str = ""


def _proofs_as_list(proof: Any) -> List[Any]:
    if proof is None:
        return []
    if isinstance(proof, list):
        return list(proof)
    return [proof]


def _validate_proof_object(proof: Any) -> None:
    """Check proof shape; does not verify the signature."""
    if not isinstance(proof, dict):
        raise ValueError("proof must be an object")

    t = proof.get("type")
    if not isinstance(t, str) or not hmac.compare_digest(t, PROOF_TYPE):
        raise ValueError(f"Unsupported proof.type: {t!r} (expected {PROOF_TYPE})")

    created = proof.get("created")
    if not isinstance(created, str) or not _RFC3339_Z_RE.match(created):
        raise ValueError("proof.created must be RFC3339 UTC like '2025-01-01T00:00:00Z'")

    vm = proof.get("verificationMethod")
    if not isinstance(vm, str) or not vm.startswith("did:key:"):
        raise ValueError("proof.verificationMethod must be a did:key verification method")

    purpose = proof.get("proofPurpose")
    if purpose not in _ALLOWED_PROOF_PURPOSES:
        raise ValueError(f"Unsupported proof.proofPurpose: {purpose!r}")

    jws = proof.get("jws")
    if not isinstance(jws, str) or not jws or not _B64URL_RE.match(jws):
        raise ValueError("proof.jws must be a non-empty unpadded base64url string")


def sign_report(
    report: Dict[str, Any],
    private_key: Ed25519PrivateKey,
    verification_method: str,
    proof_purpose: str = "assertionMethod",
    created: Optional[str] = None,
) -> Dict[str, Any]:
    """Add an Ed25519 proof to ``report`` in place and return it.

    Existing proofs are kept; the payload itself is not modified.
    """
    signature = private_key.sign(signing_input(report))
    proof = {
        "type": PROOF_TYPE,
        "created": created or now_rfc3339(),
        "verificationMethod": verification_method,
        "proofPurpose": proof_purpose,
        "jws": b64url_encode(signature),
    }
    _validate_proof_object(proof)

    existing = report.get("proof")
    if existing is None:
        report["proof"] = proof
    elif isinstance(existing, list):
        existing.append(proof)
    else:
        report["proof"] = [existing, proof]
    return report


def verify_report(report: Dict[str, Any]) -> List[ProofResult]:
    """Verify every proof on ``report``. Returns one ProofResult per proof."""
    message = signing_input(report)
    results: List[ProofResult] = []
    for proof in _proofs_as_list(report.get("proof")):
        vm = str(proof.get("verificationMethod") or "") if isinstance(proof, dict) else ""
        try:
            _validate_proof_object(proof)
            public_key = public_key_from_did_key(vm.split("#", 1)[0])
            signature = b64url_decode(proof["jws"])
            if len(signature) != 64:
                raise ValueError(f"Ed25519 signature must be 64 bytes, got {len(signature)}")
            public_key.verify(signature, message)
            results.append(ProofResult(verification_method=vm, ok=True))
        except InvalidSignature:
            results.append(ProofResult(verification_method=vm, ok=False, error="signature mismatch"))
        except ValueError as ex:
            results.append(ProofResult(verification_method=vm, ok=False, error=str(ex)))

    failed = [r for r in results if not r.ok]
    if failed:
        logger.warning(
            "provenance report proof verification failed",
            operation="verify_report",
            error_code="InvalidProof",
            failed=len(failed),
            total=len(results),
        )
    return results


def is_report_verified(report: Dict[str, Any]) -> bool:
    """True when the report has at least one proof and every proof verifies."""
    results = verify_report(report)
    return bool(results) and all(r.ok for r in results)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _report_validator() -> Draft202012Validator:
    text = resources.files("custody").joinpath("schemas/provenance-report.schema.json").read_text(encoding="utf-8")
    schema = json.loads(text)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_report(report: Any) -> List[str]:
    """Validate report shape. Returns a list of error messages (empty means valid)."""
    errors: List[str] = []
    for e in sorted(_report_validator().iter_errors(report), key=str):
        errors.append(f"{list(e.absolute_path)}: {e.message}")

    if not errors:
        if report["history_length"] != len(report["history"]):
            errors.append("history_length does not match number of history steps")
        elif report["history"] and report["history"][-1]["digest"] != report["head_digest"]:
            errors.append("head_digest does not match the last history step")
    return errors


__all__ = [
    "PROOF_TYPE",
    "ProofResult",
    "b58encode",
    "b58decode",
    "b64url_encode",
    "b64url_decode",
    "did_key_from_public_key",
    "public_key_from_did_key",
    "verification_method_for",
    "generate_ed25519_jwk",
    "load_private_key_from_jwk",
    "build_provenance_report",
    "signing_input",
    "sign_report",
    "verify_report",
    "is_report_verified",
    "validate_report",
]
