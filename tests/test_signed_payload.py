"""Tests for App Store JWS verification — chain, signature, identity, environment."""
from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import jwt as pyjwt
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509 import ocsp

from mealnow.errors import VerificationError, VerificationStatus
from mealnow.models.billing import DecodedTransaction, Environment
from mealnow.services.signed_payload import (
    APPLE_LEAF_OID, SignedDataVerifier, load_root_certificates,
)
from conftest import OCSP_URL, AppleSigner, build_certificate


def _status(result) -> VerificationStatus:
    assert isinstance(result, VerificationError), result
    return result.status


# ── Happy path ────────────────────────────────────────────────────────────────

class TestVerifyNotification:
    def test_decodes_nested_transaction_and_renewal(self, apple):
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        signed = apple.notification(
            "DID_RENEW", "otid-1", expires_at=expires, auto_renew_status=1
        )
        result = apple.verifier(Environment.SANDBOX).verify(signed)

        assert isinstance(result, DecodedTransaction)
        assert result.notification_type == "DID_RENEW"
        assert result.original_transaction_id == "otid-1"
        assert result.transaction_id == "otid-1-renewal"
        assert result.product_id == "com.mealnow.premium.monthly"
        assert result.expires_at == expires
        assert result.auto_renew is True
        assert result.environment == "Sandbox"
        assert result.signed_at is not None

    def test_subtype_and_missing_renewal_info(self, apple):
        signed = apple.notification(
            "DID_CHANGE_RENEWAL_STATUS", "otid-2", subtype="AUTO_RENEW_DISABLED"
        )
        result = apple.verifier().verify(signed)
        assert result.subtype == "AUTO_RENEW_DISABLED"
        assert result.auto_renew is None

    def test_auto_renew_off(self, apple):
        signed = apple.notification("DID_CHANGE_RENEWAL_STATUS", "otid-3", auto_renew_status=0)
        assert apple.verifier().verify(signed).auto_renew is False

    def test_standalone_transaction(self, apple):
        signed = apple.transaction("otid-4")
        result = apple.verifier().decode_transaction(signed)
        assert isinstance(result, DecodedTransaction)
        assert result.original_transaction_id == "otid-4"


# ── Failures come back as values ──────────────────────────────────────────────

class TestVerificationFailures:
    def test_garbage_never_raises(self, apple):
        result = apple.verifier().verify("not-a-jws")
        assert _status(result) == VerificationStatus.VERIFICATION_FAILURE

    def test_untrusted_root(self, apple):
        other = AppleSigner()
        signed = other.notification("SUBSCRIBED", "otid-5")
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_CHAIN

    def test_no_roots_fails_closed(self, apple):
        verifier = SignedDataVerifier([], Environment.SANDBOX, bundle_id=apple.bundle_id)
        signed = apple.notification("SUBSCRIBED", "otid-6")
        assert _status(verifier.verify(signed)) == VerificationStatus.INVALID_CERTIFICATE

    def test_tampered_payload(self, apple):
        signed = apple.notification("EXPIRED", "otid-7")
        header, payload, signature = signed.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims["notificationType"] = "DID_RENEW"
        forged = base64.urlsafe_b64encode(json.dumps(claims).encode()).rstrip(b"=").decode()
        result = apple.verifier().verify(f"{header}.{forged}.{signature}")
        assert _status(result) == VerificationStatus.INVALID_SIGNATURE

    def test_signed_by_key_outside_chain(self, apple):
        rogue_key = ec.generate_private_key(ec.SECP256R1())
        signed = apple.sign({"notificationType": "SUBSCRIBED", "data": {}}, key=rogue_key)
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_SIGNATURE

    def test_chain_must_have_three_certificates(self, apple):
        signed = apple.sign({"data": {}}, chain=[apple.leaf, apple.intermediate])
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_CHAIN_LENGTH

    def test_non_es256_rejected(self, apple):
        token = pyjwt.encode({"data": {}}, "x" * 32, algorithm="HS256")
        assert _status(apple.verifier().verify(token)) == VerificationStatus.INVALID_SIGNATURE

    def test_leaf_without_marker_extension(self, apple):
        key = ec.generate_private_key(ec.SECP256R1())
        leaf = build_certificate(
            "Unmarked leaf", key.public_key(), "Test WWDR", apple.intermediate_key, ca=False
        )
        signed = apple.sign({"data": {}}, key=key, chain=[leaf, apple.intermediate, apple.root])
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_CHAIN

    def test_leaf_not_issued_by_intermediate(self, apple):
        key = ec.generate_private_key(ec.SECP256R1())
        leaf = build_certificate(
            "Self-issued leaf", key.public_key(), "Test WWDR", key, ca=False,
            marker_oid=APPLE_LEAF_OID,
        )
        signed = apple.sign({"data": {}}, key=key, chain=[leaf, apple.intermediate, apple.root])
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_CHAIN

    def test_certificate_not_valid_at_signed_date(self, apple):
        future = datetime.now(timezone.utc) + timedelta(days=800)
        signed = apple.notification("SUBSCRIBED", "otid-8", signed_at=future)
        assert _status(apple.verifier().verify(signed)) == VerificationStatus.INVALID_CERTIFICATE


# ── Identity + environment ────────────────────────────────────────────────────

class TestIdentityChecks:
    def test_environment_is_never_taken_from_payload(self, apple):
        signed = apple.notification("SUBSCRIBED", "otid-9", environment="Sandbox")
        result = apple.verifier(Environment.PRODUCTION).verify(signed)
        assert _status(result) == VerificationStatus.INVALID_ENVIRONMENT

    def test_production_payload_on_production_verifier(self, apple):
        signed = apple.notification("SUBSCRIBED", "otid-10", environment="Production")
        result = apple.verifier(Environment.PRODUCTION).verify(signed)
        assert isinstance(result, DecodedTransaction)

    def test_bundle_id_mismatch(self, apple):
        other = AppleSigner(bundle_id="com.other.app")
        verifier = SignedDataVerifier(
            [other.root_der], Environment.SANDBOX, bundle_id=apple.bundle_id
        )
        signed = other.notification("SUBSCRIBED", "otid-11")
        assert _status(verifier.verify(signed)) == VerificationStatus.INVALID_APP_IDENTIFIER

    def test_app_apple_id_checked_in_production(self, apple):
        verifier = SignedDataVerifier(
            [apple.root_der], Environment.PRODUCTION, bundle_id=apple.bundle_id, app_apple_id=42
        )
        signed = apple.notification("SUBSCRIBED", "otid-12", environment="Production")
        assert _status(verifier.verify(signed)) == VerificationStatus.INVALID_APP_IDENTIFIER

    def test_transaction_bundle_mismatch(self, apple):
        signed = apple.transaction("otid-13", bundle_id="com.other.app")
        with pytest.raises(VerificationError) as exc:
            apple.verifier().verify_and_decode_transaction(signed)
        assert exc.value.status == VerificationStatus.INVALID_APP_IDENTIFIER


# ── Revocation (online checks) ────────────────────────────────────────────────

def _ocsp_answer(
    apple, status=ocsp.OCSPCertStatus.GOOD, responder=None, responder_key=None
) -> bytes:
    now = datetime.now(timezone.utc)
    revoked = status == ocsp.OCSPCertStatus.REVOKED
    builder = ocsp.OCSPResponseBuilder().add_response(
        cert=apple.leaf,
        issuer=apple.intermediate,
        algorithm=hashes.SHA256(),
        cert_status=status,
        this_update=now - timedelta(minutes=5),
        next_update=now + timedelta(hours=1),
        revocation_time=now - timedelta(days=1) if revoked else None,
        revocation_reason=None,
    )
    if responder is None:
        builder = builder.responder_id(ocsp.OCSPResponderEncoding.HASH, apple.intermediate)
        key = apple.intermediate_key
    else:
        builder = builder.responder_id(ocsp.OCSPResponderEncoding.HASH, responder)
        builder = builder.certificates([responder])
        key = responder_key
    return builder.sign(key, hashes.SHA256()).public_bytes(Encoding.DER)


class TestRevocationChecks:
    @staticmethod
    def _verifier(apple, handler) -> SignedDataVerifier:
        return SignedDataVerifier(
            [apple.root_der], Environment.SANDBOX,
            bundle_id=apple.bundle_id,
            app_apple_id=apple.app_apple_id,
            online_checks=True,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )

    def test_good_status_is_checked_once_per_certificate(self, apple):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, content=_ocsp_answer(apple))

        signed = apple.notification("DID_RENEW", "otid-ocsp-1", auto_renew_status=1)
        result = self._verifier(apple, handler).verify(signed)

        assert isinstance(result, DecodedTransaction)
        assert len(requests) == 1
        assert str(requests[0].url) == OCSP_URL
        assert requests[0].headers["content-type"] == "application/ocsp-request"
        assert ocsp.load_der_ocsp_request(requests[0].content).serial_number == apple.leaf.serial_number

    def test_revoked_certificate_rejected(self, apple):
        verifier = self._verifier(
            apple,
            lambda request: httpx.Response(200, content=_ocsp_answer(apple, ocsp.OCSPCertStatus.REVOKED)),
        )
        signed = apple.notification("SUBSCRIBED", "otid-ocsp-2")
        assert _status(verifier.verify(signed)) == VerificationStatus.INVALID_CERTIFICATE

    def test_responder_down_fails_closed(self, apple):
        verifier = self._verifier(apple, lambda request: httpx.Response(503))
        signed = apple.notification("SUBSCRIBED", "otid-ocsp-3")
        assert _status(verifier.verify(signed)) == VerificationStatus.VERIFICATION_FAILURE

    def test_answer_from_unrelated_responder_rejected(self, apple):
        rogue_key = ec.generate_private_key(ec.SECP256R1())
        rogue = build_certificate(
            "Rogue Responder", rogue_key.public_key(), "Rogue CA", rogue_key, ca=False
        )
        verifier = self._verifier(
            apple,
            lambda request: httpx.Response(
                200, content=_ocsp_answer(apple, responder=rogue, responder_key=rogue_key)
            ),
        )
        signed = apple.notification("SUBSCRIBED", "otid-ocsp-4")
        assert _status(verifier.verify(signed)) == VerificationStatus.VERIFICATION_FAILURE

    def test_leaf_without_responder_rejected(self, apple):
        key = ec.generate_private_key(ec.SECP256R1())
        leaf = build_certificate(
            "Leaf without AIA", key.public_key(), "Test WWDR", apple.intermediate_key,
            ca=False, marker_oid=APPLE_LEAF_OID,
        )
        verifier = self._verifier(apple, lambda request: httpx.Response(500))
        signed = apple.sign({"data": {}}, key=key, chain=[leaf, apple.intermediate, apple.root])
        result = verifier.verify(signed)
        assert _status(result) == VerificationStatus.VERIFICATION_FAILURE
        assert "no OCSP responder" in result.message


# ── Root certificate loading ──────────────────────────────────────────────────

def test_load_root_certificates_der_and_pem(tmp_path, apple):
    other = AppleSigner()
    (tmp_path / "AppleRootCA-G3.cer").write_bytes(apple.root_der)
    (tmp_path / "Other.pem").write_bytes(other.root.public_bytes(Encoding.PEM))
    (tmp_path / "README.txt").write_text("not a certificate")

    roots = load_root_certificates(tmp_path)
    assert set(roots) == {apple.root_der, other.root_der}


def test_load_root_certificates_missing_dir(tmp_path):
    assert load_root_certificates(tmp_path / "nope") == []


def test_load_root_certificates_skips_subdirectories(tmp_path, apple):
    (tmp_path / "AppleRootCA-G3.cer").write_bytes(apple.root_der)
    (tmp_path / "archive.cer").mkdir()
    (tmp_path / "old").mkdir()

    assert load_root_certificates(tmp_path) == [apple.root_der]
