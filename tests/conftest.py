"""
Pytest configuration and fixtures for testing
"""
import json
import struct
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from crud.entitlement import EntitlementRepository
from database import Base, engine_options
from jobs.import_job_manager import ImportJobManager
from services.billing_provider import BillingProvider, ProviderCheckoutSession, ProviderSubscription
from services.billing_service import BillingService
from services.email_service import EmailService
from services.entitlement_service import EntitlementService
from services.errors import BillingProviderError, ProviderUnavailableError, SignatureError
from services.storage_service import LocalBlobStore

FREE_QUOTA = 2
MONTHLY_PRICE = "price_monthly"
ANNUAL_PRICE = "price_annual"
VALID_SIGNATURE = "t=1,v1=valid"

# One-triangle binary STL: 80-byte header, uint32 count, 50-byte facet
BINARY_STL = b"\x00" * 80 + struct.pack("<I", 1) + b"\x00" * 50

ASCII_STL = (
    b"solid cube\n"
    b"  facet normal 0 0 1\n"
    b"    outer loop\n"
    b"      vertex 0 0 0\n"
    b"      vertex 1 0 0\n"
    b"      vertex 0 1 0\n"
    b"    endloop\n"
    b"  endfacet\n"
    b"endsolid cube\n"
)


def create_test_engine(db_path):
    """
    File-backed SQLite engine for tests.

    NullPool gives every session its own connection, so concurrent
    coroutines really do race on the database like separate requests would.
    """
    url = f"sqlite+aiosqlite:///{db_path}"
    return create_async_engine(url, poolclass=NullPool, **engine_options(url))


def create_session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_tables(engine):
    # Import models to ensure they're registered with Base
    import database_models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class FakeBillingProvider(BillingProvider):
    """
    In-memory billing provider.

    Set `unavailable = True` to make every call fail the way a timed-out
    provider would.
    """

    def __init__(self):
        self.customers = {}
        self.subscriptions = {}
        self.checkout_sessions = {}
        self.unavailable = False

    def _check_available(self):
        if self.unavailable:
            raise ProviderUnavailableError("Billing provider timed out")

    def add_customer(self, customer_ref, user_id=None, email=None):
        metadata = {"userId": user_id} if user_id else {}
        if email:
            metadata["email"] = email
        self.customers[customer_ref] = metadata

    def add_subscription(self, ref, customer_ref, status="active", price_ref=MONTHLY_PRICE, period_end=None):
        subscription = ProviderSubscription(
            ref=ref,
            customer_ref=customer_ref,
            status=status,
            current_period_end=period_end,
            price_ref=price_ref,
        )
        self.subscriptions[ref] = subscription
        return subscription

    async def create_customer(self, email, metadata):
        self._check_available()
        ref = f"cus_{len(self.customers) + 1}"
        self.customers[ref] = dict(metadata, email=email)
        return ref

    async def retrieve_customer_metadata(self, customer_ref):
        self._check_available()
        return dict(self.customers.get(customer_ref, {}))

    async def retrieve_subscription(self, subscription_ref):
        self._check_available()
        if subscription_ref not in self.subscriptions:
            raise BillingProviderError(f"No such subscription: {subscription_ref}")
        return self.subscriptions[subscription_ref]

    async def list_active_subscriptions(self, customer_ref):
        self._check_available()
        return [
            sub for sub in self.subscriptions.values()
            if sub.customer_ref == customer_ref and sub.status == "active"
        ]

    async def create_checkout_session(self, customer_ref, price_ref, success_url, cancel_url, metadata=None):
        self._check_available()
        session_id = f"cs_{len(self.checkout_sessions) + 1}"
        session = ProviderCheckoutSession(
            session_id=session_id,
            url=f"https://checkout.test/{session_id}",
            status="open",
            payment_status="unpaid",
            customer_ref=customer_ref,
            metadata={
                **(metadata or {}),
                "price": price_ref,
                "success_url": success_url,
                "cancel_url": cancel_url,
            },
        )
        self.checkout_sessions[session_id] = session
        return session

    def complete_checkout(self, session_id, subscription_ref):
        session = self.checkout_sessions[session_id]
        session.status = "complete"
        session.payment_status = "paid"
        session.subscription_ref = subscription_ref
        self.add_subscription(subscription_ref, session.customer_ref, price_ref=session.metadata["price"])

    async def retrieve_checkout_session(self, session_id):
        self._check_available()
        if session_id not in self.checkout_sessions:
            raise BillingProviderError(f"No such checkout session: {session_id}")
        return self.checkout_sessions[session_id]

    async def cancel_subscription_at_period_end(self, subscription_ref):
        subscription = await self.retrieve_subscription(subscription_ref)
        subscription.cancel_at_period_end = True
        return subscription

    async def create_billing_portal_session(self, customer_ref, return_url):
        self._check_available()
        return f"https://billing.test/{customer_ref}?return_url={return_url}"

    def verify_and_parse_event(self, raw_body, signature, secret):
        if signature != VALID_SIGNATURE:
            raise SignatureError("Invalid webhook signature")
        return json.loads(raw_body)


class RecordingEmailService(EmailService):
    """EmailService that records messages instead of talking to SMTP."""

    def __init__(self):
        super().__init__(host="smtp.test", sender="billing@fishcad.test")
        self.sent = []

    async def send(self, to, subject, html_body):
        if not to:
            return False
        self.sent.append({"to": to, "subject": subject, "body": html_body})
        return True


def webhook_event(event_type, obj, event_id="evt_1"):
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


@pytest.fixture
async def session_factory(tmp_path):
    """
    Fixture that provides an isolated, file-backed SQLite database for each test.

    This fixture:
    - Creates all tables before the test runs
    - Yields a session factory bound to the test database
    - Drops all tables after the test completes
    """
    engine = create_test_engine(tmp_path / "test.db")
    await create_tables(engine)

    yield create_session_factory(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return EntitlementRepository(session_factory)


@pytest.fixture
def provider():
    return FakeBillingProvider()


@pytest.fixture
def entitlements(repository, provider):
    return EntitlementService(
        repository,
        provider,
        free_quota=FREE_QUOTA,
        monthly_price_ref=MONTHLY_PRICE,
        annual_price_ref=ANNUAL_PRICE,
    )


@pytest.fixture
def email_service():
    return RecordingEmailService()


@pytest.fixture
def billing_service(entitlements, provider, email_service):
    return BillingService(entitlements, provider, email_service)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(
        root=tmp_path / "uploads",
        signing_secret="test-signing-secret",
        public_base_url="http://testserver",
    )


@pytest.fixture
def make_import_manager(blob_store):
    """Factory for ImportJobManager instances with a mock HTTP transport."""
    def _make(transport=None, retention=timedelta(hours=24), max_download_bytes=None):
        return ImportJobManager(
            blob_store=blob_store,
            download_timeout=5,
            retention=retention,
            transport=transport,
            max_download_bytes=max_download_bytes,
        )
    return _make
