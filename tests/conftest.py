"""Shared test fixtures — single test DB for all test modules, test Apple PKI."""
from __future__ import annotations

import base64
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import jwt as pyjwt
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Use a shared in-memory DB with check_same_thread=False and StaticPool
# so every connection sees the same in-memory database.
from sqlalchemy.pool import StaticPool

from mealnow.auth import create_access_token
from mealnow.db.engine import get_session
from mealnow.db.tables import Base
from mealnow.models.billing import BillingConfig, Environment
from mealnow.services.signed_payload import (
    APPLE_INTERMEDIATE_OID, APPLE_LEAF_OID, SignedDataVerifier,
)

TEST_DB_URL = "sqlite+aiosqlite:///file:test?mode=memory&cache=shared&uri=true"

BUNDLE_ID = "com.mealnow.test"
APP_APPLE_ID = 1234567890
MONTHLY = "com.mealnow.premium.monthly"
OCSP_URL = "http://ocsp.test/ocsp03-wwdrg6"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, expire_on_commit=False, class_=AsyncSession)


async def override_get_session():
    async with TestSession() as session:
        yield session


# Import app and override BEFORE any test module imports app
from mealnow.api.main import app  # noqa: E402

app.dependency_overrides[get_session] = override_get_session

import mealnow.db.engine as _engine_mod  # noqa: E402
_engine_mod.async_session = TestSession
_engine_mod.engine = test_engine


@asynccontextmanager
async def get_test_session():
    """Context manager for seeding data in tests."""
    async with TestSession() as session:
        yield session


@pytest_asyncio.fixture(autouse=True)
async def setup_db():
    """Create tables before each test, drop after."""
    import mealnow.db.subscription_tables  # noqa: F401

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    from mealnow.middleware.metrics import metrics
    metrics.reset()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def session():
    async with TestSession() as s:
        yield s


@pytest_asyncio.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig(trial_days=7, trial_count=3, daily_usage_limit=20, combo_grace_seconds=300)


@pytest.fixture
def auth():
    """Build bearer headers for a user id."""

    def _headers(user_id: str, **extra) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user_id)}", **extra}

    return _headers


# ── Test Apple PKI ────────────────────────────────────────────────────────────

def _name(cn: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "MealNow Test"),
        x509.NameAttribute(NameOID.COMMON_NAME, cn),
    ])


def build_certificate(
    subject: str,
    public_key,
    issuer: str,
    signing_key,
    ca: bool,
    marker_oid: x509.ObjectIdentifier | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    ocsp_url: str | None = None,
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if marker_oid is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker_oid, b"\x05\x00"), critical=False
        )
    if ocsp_url is not None:
        builder = builder.add_extension(
            x509.AuthorityInformationAccess([
                x509.AccessDescription(
                    AuthorityInformationAccessOID.OCSP, x509.UniformResourceIdentifier(ocsp_url)
                ),
            ]),
            critical=False,
        )
    return builder.sign(signing_key, hashes.SHA256())


class AppleSigner:
    """Root -> WWDR-style intermediate -> App Store leaf, plus payload builders."""

    def __init__(self, bundle_id: str = BUNDLE_ID, app_apple_id: int = APP_APPLE_ID):
        self.bundle_id = bundle_id
        self.app_apple_id = app_apple_id

        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.root = build_certificate(
            "Test Root CA", self.root_key.public_key(), "Test Root CA", self.root_key, ca=True
        )
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate = build_certificate(
            "Test WWDR", self.intermediate_key.public_key(), "Test Root CA", self.root_key,
            ca=True, marker_oid=APPLE_INTERMEDIATE_OID,
        )
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf = build_certificate(
            "Test App Store Signing", self.leaf_key.public_key(), "Test WWDR",
            self.intermediate_key, ca=False, marker_oid=APPLE_LEAF_OID, ocsp_url=OCSP_URL,
        )

    @property
    def root_der(self) -> bytes:
        return self.root.public_bytes(Encoding.DER)

    def verifier(self, environment: Environment = Environment.SANDBOX) -> SignedDataVerifier:
        return SignedDataVerifier(
            [self.root_der], environment, bundle_id=self.bundle_id, app_apple_id=self.app_apple_id
        )

    def sign(self, payload: dict, key=None, chain: list[x509.Certificate] | None = None) -> str:
        chain = chain or [self.leaf, self.intermediate, self.root]
        x5c = [base64.b64encode(c.public_bytes(Encoding.DER)).decode() for c in chain]
        return pyjwt.encode(
            payload, key or self.leaf_key, algorithm="ES256", headers={"x5c": x5c}
        )

    def transaction(
        self,
        original_transaction_id: str,
        product_id: str = MONTHLY,
        expires_at: datetime | None = None,
        environment: str = "Sandbox",
        bundle_id: str | None = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        expires_at = expires_at or now + timedelta(days=30)
        return self.sign({
            "transactionId": f"{original_transaction_id}-renewal",
            "originalTransactionId": original_transaction_id,
            "bundleId": bundle_id or self.bundle_id,
            "productId": product_id,
            "purchaseDate": _ms(now),
            "expiresDate": _ms(expires_at),
            "type": "Auto-Renewable Subscription",
            "environment": environment,
            "signedDate": _ms(now),
        })

    def renewal(self, original_transaction_id: str, auto_renew_status: int, environment: str = "Sandbox") -> str:
        return self.sign({
            "originalTransactionId": original_transaction_id,
            "autoRenewProductId": MONTHLY,
            "productId": MONTHLY,
            "autoRenewStatus": auto_renew_status,
            "environment": environment,
            "signedDate": _ms(datetime.now(timezone.utc)),
        })

    def notification(
        self,
        notification_type: str,
        original_transaction_id: str,
        subtype: str | None = None,
        environment: str = "Sandbox",
        signed_at: datetime | None = None,
        expires_at: datetime | None = None,
        product_id: str = MONTHLY,
        auto_renew_status: int | None = None,
    ) -> str:
        data = {
            "bundleId": self.bundle_id,
            "appAppleId": self.app_apple_id,
            "environment": environment,
            "signedTransactionInfo": self.transaction(
                original_transaction_id, product_id, expires_at, environment
            ),
        }
        if auto_renew_status is not None:
            data["signedRenewalInfo"] = self.renewal(
                original_transaction_id, auto_renew_status, environment
            )
        payload = {
            "notificationType": notification_type,
            "notificationUUID": f"uuid-{notification_type}-{original_transaction_id}",
            "data": data,
            "version": "2.0",
            "signedDate": _ms(signed_at or datetime.now(timezone.utc)),
        }
        if subtype:
            payload["subtype"] = subtype
        return self.sign(payload)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


@pytest.fixture(scope="session")
def apple() -> AppleSigner:
    return AppleSigner()
