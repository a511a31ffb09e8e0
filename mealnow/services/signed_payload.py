"""
App Store signed-payload verification
---
Verifies JWS blobs signed by Apple (server notifications v2, StoreKit 2
transactions and renewal info) against a fixed set of trusted root
certificates and decodes them into ``DecodedTransaction`` records.

The verification environment is always an explicit constructor argument.
It is compared against the *verified* payload, never used to pick a
verifier from unverified content.

With online checks on, the signing certificate is also checked for
revocation against the OCSP responder named in it.
"""
from __future__ import annotations

import base64
import logging
from datetime import datetime, timedelta
from functools import lru_cache
from pathlib import Path

import httpx
import jwt as pyjwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID

from config.settings import settings
from mealnow.errors import VerificationError, VerificationStatus
from mealnow.models.billing import DecodedTransaction, Environment, as_utc, ms_to_dt, now_utc

logger = logging.getLogger(__name__)

# Apple marker extensions on the WWDR intermediate and the App Store leaf
APPLE_INTERMEDIATE_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.2.1")
APPLE_LEAF_OID = x509.ObjectIdentifier("1.2.840.113635.100.6.11.1")

_ALGORITHM = "ES256"

_OCSP_CACHE_TTL = timedelta(minutes=15)

_CERT_SUFFIXES = (".pem", ".cer", ".der", ".crt")


# ── Root certificates ─────────────────────────────────────────────────────────

def load_root_certificates(cert_dir: str | Path) -> list[bytes]:
    """Load trusted roots (DER ``.cer`` or ``.pem``) as DER bytes."""
    path = Path(cert_dir)
    if not path.is_dir():
        logger.error(f"Apple root certificate directory not found: {path}")
        return []

    roots: list[bytes] = []
    for file in sorted(path.iterdir()):
        suffix = file.suffix.lower()
        if not file.is_file() or suffix not in _CERT_SUFFIXES:
            continue
        try:
            data = file.read_bytes()
            if suffix == ".pem":
                cert = x509.load_pem_x509_certificate(data)
            else:
                cert = x509.load_der_x509_certificate(data)
        except (OSError, ValueError):
            logger.error(f"Skipping unreadable root certificate: {file.name}")
            continue
        roots.append(cert.public_bytes(Encoding.DER))

    logger.info(f"Loaded {len(roots)} Apple root certificates from {path}")
    return roots


# ── Verifier ──────────────────────────────────────────────────────────────────

class SignedDataVerifier:
    def __init__(
        self,
        root_certificates: list[bytes],
        environment: Environment,
        bundle_id: str,
        app_apple_id: int | None = None,
        online_checks: bool = False,
        http_client: httpx.Client | None = None,
    ):
        self.root_certificates = frozenset(root_certificates)
        self.environment = Environment(environment)
        self.bundle_id = bundle_id
        self.app_apple_id = app_apple_id
        self.online_checks = online_checks
        self.http_client = http_client
        self._revocation_checked: dict[bytes, datetime] = {}

    # -- public API -----------------------------------------------------------

    def verify_and_decode_notification(self, signed_payload: str) -> dict:
        payload = self._verify_jws(signed_payload)
        data = payload.get("data") or payload.get("summary")
        if not data:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, "notification carries no data"
            )
        self._check_app_identity(
            data.get("bundleId"), data.get("appAppleId"), data.get("environment")
        )
        return payload

    def verify_and_decode_transaction(self, signed_transaction: str) -> dict:
        payload = self._verify_jws(signed_transaction)
        if payload.get("bundleId") != self.bundle_id:
            raise VerificationError(
                VerificationStatus.INVALID_APP_IDENTIFIER,
                f"bundle id {payload.get('bundleId')!r} does not match",
            )
        self._check_environment(payload.get("environment"))
        return payload

    def verify_and_decode_renewal_info(self, signed_renewal_info: str) -> dict:
        payload = self._verify_jws(signed_renewal_info)
        self._check_environment(payload.get("environment"))
        return payload

    def verify(self, signed_payload: str) -> DecodedTransaction | VerificationError:
        """Verify a notification and its nested transaction/renewal info.

        Never raises: any failure comes back as a ``VerificationError`` value
        so webhook handlers can acknowledge fraudulent payloads without retrying.
        """
        try:
            notification = self.verify_and_decode_notification(signed_payload)
            data = notification.get("data") or {}

            transaction: dict = {}
            if data.get("signedTransactionInfo"):
                transaction = self.verify_and_decode_transaction(data["signedTransactionInfo"])
            renewal: dict = {}
            if data.get("signedRenewalInfo"):
                renewal = self.verify_and_decode_renewal_info(data["signedRenewalInfo"])

            auto_renew = None
            if "autoRenewStatus" in renewal:
                auto_renew = renewal["autoRenewStatus"] == 1

            return DecodedTransaction(
                original_transaction_id=transaction.get("originalTransactionId")
                or renewal.get("originalTransactionId"),
                transaction_id=transaction.get("transactionId"),
                product_id=transaction.get("productId") or renewal.get("productId"),
                expires_at=ms_to_dt(transaction.get("expiresDate")),
                auto_renew=auto_renew,
                notification_type=notification.get("notificationType"),
                subtype=notification.get("subtype"),
                notification_uuid=notification.get("notificationUUID"),
                signed_at=ms_to_dt(notification.get("signedDate")),
                environment=data.get("environment"),
            )
        except VerificationError as e:
            return e
        except Exception as e:
            logger.exception("Unexpected error while verifying signed payload")
            return VerificationError(VerificationStatus.VERIFICATION_FAILURE, str(e))

    def decode_transaction(self, signed_transaction: str) -> DecodedTransaction | VerificationError:
        """Same contract as :meth:`verify` for a standalone StoreKit 2 transaction."""
        try:
            transaction = self.verify_and_decode_transaction(signed_transaction)
        except VerificationError as e:
            return e
        except Exception as e:
            logger.exception("Unexpected error while verifying signed transaction")
            return VerificationError(VerificationStatus.VERIFICATION_FAILURE, str(e))
        return DecodedTransaction(
            original_transaction_id=transaction.get("originalTransactionId"),
            transaction_id=transaction.get("transactionId"),
            product_id=transaction.get("productId"),
            expires_at=ms_to_dt(transaction.get("expiresDate")),
            signed_at=ms_to_dt(transaction.get("signedDate")),
            environment=transaction.get("environment"),
        )

    # -- identity checks --------------------------------------------------------

    def _check_app_identity(self, bundle_id, app_apple_id, environment) -> None:
        if bundle_id != self.bundle_id:
            raise VerificationError(
                VerificationStatus.INVALID_APP_IDENTIFIER,
                f"bundle id {bundle_id!r} does not match",
            )
        if (
            self.environment == Environment.PRODUCTION
            and self.app_apple_id is not None
            and app_apple_id != self.app_apple_id
        ):
            raise VerificationError(
                VerificationStatus.INVALID_APP_IDENTIFIER,
                f"app apple id {app_apple_id!r} does not match",
            )
        self._check_environment(environment)

    def _check_environment(self, environment) -> None:
        if environment != self.environment.value:
            raise VerificationError(
                VerificationStatus.INVALID_ENVIRONMENT,
                f"payload environment {environment!r}, verifier expects {self.environment.value}",
            )

    # -- JWS + certificate chain ------------------------------------------------

    def _verify_jws(self, token: str) -> dict:
        if not self.root_certificates:
            raise VerificationError(
                VerificationStatus.INVALID_CERTIFICATE, "no trusted root certificates loaded"
            )
        try:
            header = pyjwt.get_unverified_header(token)
        except pyjwt.PyJWTError as e:
            raise VerificationError(VerificationStatus.VERIFICATION_FAILURE, str(e)) from e

        if header.get("alg") != _ALGORITHM:
            raise VerificationError(
                VerificationStatus.INVALID_SIGNATURE, f"unsupported alg {header.get('alg')!r}"
            )

        chain = header.get("x5c") or []
        if len(chain) != 3:
            raise VerificationError(
                VerificationStatus.INVALID_CHAIN_LENGTH, f"expected 3 certificates, got {len(chain)}"
            )

        try:
            leaf, intermediate, root = (
                x509.load_der_x509_certificate(base64.b64decode(c)) for c in chain
            )
        except (ValueError, TypeError) as e:
            raise VerificationError(VerificationStatus.INVALID_CERTIFICATE, str(e)) from e

        self._verify_chain(leaf, intermediate, root)
        if self.online_checks:
            self._check_revocation(leaf, intermediate)

        try:
            payload = pyjwt.decode(
                token,
                key=leaf.public_key(),
                algorithms=[_ALGORITHM],
                options={"verify_aud": False, "verify_iat": False},
            )
        except pyjwt.InvalidSignatureError as e:
            raise VerificationError(VerificationStatus.INVALID_SIGNATURE, str(e)) from e
        except pyjwt.PyJWTError as e:
            raise VerificationError(VerificationStatus.VERIFICATION_FAILURE, str(e)) from e

        effective = ms_to_dt(payload.get("signedDate")) or now_utc()
        for cert in (leaf, intermediate, root):
            self._check_validity(cert, effective)
        return payload

    def _verify_chain(self, leaf, intermediate, root) -> None:
        if root.public_bytes(Encoding.DER) not in self.root_certificates:
            raise VerificationError(VerificationStatus.INVALID_CHAIN, "root certificate is not trusted")

        try:
            intermediate.extensions.get_extension_for_oid(APPLE_INTERMEDIATE_OID)
            leaf.extensions.get_extension_for_oid(APPLE_LEAF_OID)
        except x509.ExtensionNotFound as e:
            raise VerificationError(
                VerificationStatus.INVALID_CHAIN, "missing Apple marker extension"
            ) from e

        try:
            constraints = intermediate.extensions.get_extension_for_class(x509.BasicConstraints)
        except x509.ExtensionNotFound as e:
            raise VerificationError(
                VerificationStatus.INVALID_CHAIN, "intermediate is not a CA"
            ) from e
        if not constraints.value.ca:
            raise VerificationError(VerificationStatus.INVALID_CHAIN, "intermediate is not a CA")

        try:
            leaf.verify_directly_issued_by(intermediate)
            intermediate.verify_directly_issued_by(root)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise VerificationError(VerificationStatus.INVALID_CHAIN, str(e) or "bad chain") from e

    @staticmethod
    def _check_validity(cert: x509.Certificate, at: datetime) -> None:
        not_before = as_utc(cert.not_valid_before_utc)
        not_after = as_utc(cert.not_valid_after_utc)
        if not (not_before <= at <= not_after):
            raise VerificationError(
                VerificationStatus.INVALID_CERTIFICATE,
                f"certificate {cert.subject.rfc4514_string()} not valid at {at.isoformat()}",
            )

    # -- revocation (OCSP) -------------------------------------------------------

    def _check_revocation(self, leaf: x509.Certificate, issuer: x509.Certificate) -> None:
        fingerprint = leaf.fingerprint(hashes.SHA256())
        checked_at = self._revocation_checked.get(fingerprint)
        if checked_at is not None and now_utc() - checked_at < _OCSP_CACHE_TTL:
            return

        try:
            aia = leaf.extensions.get_extension_for_class(x509.AuthorityInformationAccess).value
        except x509.ExtensionNotFound as e:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, "signing certificate has no OCSP responder"
            ) from e
        urls = [
            d.access_location.value for d in aia
            if d.access_method == AuthorityInformationAccessOID.OCSP
        ]
        if not urls:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, "signing certificate has no OCSP responder"
            )

        request = ocsp.OCSPRequestBuilder().add_certificate(leaf, issuer, hashes.SHA256()).build()
        try:
            resp = self._http().post(
                urls[0],
                content=request.public_bytes(Encoding.DER),
                headers={"Content-Type": "application/ocsp-request"},
            )
            resp.raise_for_status()
            answer = ocsp.load_der_ocsp_response(resp.content)
        except (httpx.HTTPError, ValueError) as e:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, f"OCSP request failed: {e}"
            ) from e

        if answer.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE,
                f"OCSP responder answered {answer.response_status.name}",
            )
        self._verify_ocsp_signature(answer, issuer)

        if answer.serial_number != leaf.serial_number:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, "OCSP answer is for another certificate"
            )
        if answer.next_update_utc is not None and answer.next_update_utc < now_utc():
            raise VerificationError(VerificationStatus.VERIFICATION_FAILURE, "OCSP answer is stale")
        if answer.certificate_status != ocsp.OCSPCertStatus.GOOD:
            raise VerificationError(
                VerificationStatus.INVALID_CERTIFICATE,
                f"signing certificate is {answer.certificate_status.name.lower()}",
            )

        self._revocation_checked[fingerprint] = now_utc()

    @staticmethod
    def _verify_ocsp_signature(answer: ocsp.OCSPResponse, issuer: x509.Certificate) -> None:
        # the responder is the issuer itself or a delegate it signed
        responder = answer.certificates[0] if answer.certificates else issuer
        key = responder.public_key()
        try:
            if responder is not issuer:
                responder.verify_directly_issued_by(issuer)
            if isinstance(key, ec.EllipticCurvePublicKey):
                key.verify(
                    answer.signature, answer.tbs_response_bytes,
                    ec.ECDSA(answer.signature_hash_algorithm),
                )
            else:
                key.verify(
                    answer.signature, answer.tbs_response_bytes,
                    padding.PKCS1v15(), answer.signature_hash_algorithm,
                )
        except (ValueError, TypeError, InvalidSignature) as e:
            raise VerificationError(
                VerificationStatus.VERIFICATION_FAILURE, "OCSP answer signature is invalid"
            ) from e

    def _http(self) -> httpx.Client:
        if self.http_client is None:
            self.http_client = httpx.Client(timeout=10)
        return self.http_client


# ── Configured verifiers ──────────────────────────────────────────────────────

@lru_cache(maxsize=None)
def _root_certificates() -> tuple[bytes, ...]:
    return tuple(load_root_certificates(settings.APPLE_ROOT_CERTS_DIR))


@lru_cache(maxsize=None)
def get_verifier(environment: Environment) -> SignedDataVerifier:
    """Verifier for ``environment`` built from settings (cached per process)."""
    return SignedDataVerifier(
        list(_root_certificates()),
        environment,
        bundle_id=settings.BUNDLE_ID,
        app_apple_id=settings.APP_STORE_APP_ID,
        online_checks=settings.APPLE_ONLINE_CHECKS,
    )
