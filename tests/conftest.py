"""
Test fixtures for the card issuance engine test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory / db_session: Fresh SQLite database per test
  - clock: Fake UTC clock whose sleep() advances time instantly
  - rails: Scripted fake rails, one per RailKind
  - verifier / coordinator: Engine components wired to the fakes
  - key_session: An open KeySession for the default identity
  - card_factory: Inserts a funded card directly (ledger tests)
  - client: Async HTTP test client (no session)
  - session_headers: Opens a key session through the API for any identity
  - authenticated_client: Test client with an open session for IDENTITY

Key design decisions:
  - Each test gets its own SQLite file under tmp_path. The verifier and the
    issuance coordinator open their own sessions, so tests need a database
    that several connections can share, including concurrent issuance.
  - ASGITransport does not run the application lifespan, so the client
    fixture wires the engine components with configure_state() and
    overrides get_db to hit the test database.
  - Signatures are simulated: a stable 65-byte hex string derived from the
    identity and the challenge, shaped like a wallet signature.
"""

import asyncio
import hashlib
import os
import uuid
from datetime import datetime, timedelta, timezone

# Must be set before anything imports fundcard.config
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from fundcard import vault
from fundcard.database import Base, get_db
from fundcard.exceptions import CardEngineError, RailError
from fundcard.main import app, configure_state
from fundcard.mirror import MirrorError
from fundcard.models.card import CardBrand, VirtualCard
from fundcard.models.funding_intent import FundingIntent, IntentPurpose, IntentStatus, RailKind
from fundcard.rails.base import RailStatus, RailStatusReport
from fundcard.security import SessionRegistry, SignedChallenge, issue_challenge
from fundcard.services import ledger_service
from fundcard.services.card_generator import generate_cvc, generate_expiry, generate_number, mask_number
from fundcard.services.fee_service import calculate_fee
from fundcard.services.issuance_service import IssuanceCoordinator
from fundcard.services.verification_service import PaymentVerifier, new_reference


IDENTITY = "0xa11ce00000000000000000000000000000000001"
OTHER_IDENTITY = "0xb0b0000000000000000000000000000000000002"
PAYER = "0241234567"


def sign(identity: str, challenge: str) -> str:
    """Stand-in for a wallet signature: 0x + 65 bytes of hex."""
    digest = hashlib.sha256(f"{identity}:{challenge}".encode()).hexdigest()
    return "0x" + digest + digest[::-1] + "1b"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """UTC clock for the verifier. sleep() advances time and yields once."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime.now(timezone.utc)
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class FakeRail:
    """
    Scripted payment rail.

    `script` is consumed one entry per query_status() call; the last entry
    repeats forever. An entry that is an exception is raised instead of
    returned.
    """

    def __init__(self, kind: RailKind, script=None):
        self.kind = kind
        self.script = list(script or [RailStatusReport(status=RailStatus.SUCCESSFUL)])
        self.requests = []
        self.queries = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_requests = False
        self.closed = False

    async def request_payment(self, request) -> str:
        if self.fail_requests:
            raise RailError(self.kind.value, "connection refused")
        self.requests.append(request)
        return f"rail-{len(self.requests)}-{request.reference}"

    async def query_status(self, rail_reference: str) -> RailStatusReport:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            step = self.script[min(self.queries, len(self.script) - 1)]
            self.queries += 1
            if isinstance(step, Exception):
                raise step
            return step
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        self.closed = True


class FakeMirror:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records = []

    async def record(self, card_id, funding_reference, amount) -> None:
        if self.fail:
            raise MirrorError("ledger gateway answered HTTP 503")
        self.records.append((card_id, funding_reference, amount))

    async def aclose(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Identities and fakes as fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def identity():
    return IDENTITY


@pytest.fixture
def other_identity():
    return OTHER_IDENTITY


@pytest.fixture
def signer():
    return sign


@pytest.fixture
def payer():
    return PAYER


@pytest.fixture
def mirror():
    return FakeMirror()


@pytest.fixture
def failing_mirror():
    return FakeMirror(fail=True)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh file-backed engine with all tables for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fundcard-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Engine components
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rails():
    return {
        RailKind.MOBILE_MONEY: FakeRail(RailKind.MOBILE_MONEY),
        RailKind.CRYPTO: FakeRail(RailKind.CRYPTO),
    }


@pytest.fixture
def momo(rails):
    return rails[RailKind.MOBILE_MONEY]


@pytest_asyncio.fixture
async def verifier(session_factory, rails, clock):
    verifier = PaymentVerifier(
        session_factory,
        rails,
        poll_interval=5,
        timeout=600,
        clock=clock.now,
        sleep=clock.sleep,
    )
    yield verifier
    await verifier.close()


@pytest.fixture
def coordinator(session_factory, verifier):
    return IssuanceCoordinator(session_factory, verifier)


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def key_session(registry):
    """An open KeySession for IDENTITY, opened from a signed challenge."""
    challenge = issue_challenge(IDENTITY)
    session, _ = registry.open(IDENTITY, SignedChallenge(challenge, sign(IDENTITY, challenge)))
    return session


@pytest.fixture
def intent_factory(verifier):
    """Create a funding intent; mobile money from PAYER unless told otherwise."""

    async def _create(
        amount=100,
        *,
        owner_id=IDENTITY,
        rail=RailKind.MOBILE_MONEY,
        purpose=IntentPurpose.ISSUANCE,
        card_id=None,
        reference=None,
    ) -> FundingIntent:
        return await verifier.create_intent(
            owner_id=owner_id,
            rail=rail,
            amount=amount,
            reference=reference,
            payer=PAYER if rail is RailKind.MOBILE_MONEY else None,
            purpose=purpose,
            card_id=card_id,
        )

    return _create


@pytest.fixture
def card_factory(session_factory):
    """
    Insert a funded card straight into the database and return its id.

    Bypasses verification so ledger tests can start from a known balance.
    """

    async def _create(amount=100, *, owner_id=IDENTITY, spending_limit=None, currency="GHS"):
        reference = new_reference()
        now = datetime.now(timezone.utc)
        breakdown = calculate_fee(amount)
        number = generate_number()
        key = os.urandom(32)
        card_id = uuid.uuid4()

        async with session_factory() as db:
            db.add(
                FundingIntent(
                    reference=reference,
                    rail=RailKind.MOBILE_MONEY,
                    purpose=IntentPurpose.ISSUANCE,
                    owner_id=owner_id,
                    amount=amount,
                    fee=breakdown.fee,
                    total=breakdown.total,
                    currency=currency,
                    payer=PAYER,
                    status=IntentStatus.SUCCESSFUL,
                    deadline_at=now + timedelta(minutes=10),
                    resolved_at=now,
                )
            )
            db.add(
                VirtualCard(
                    id=card_id,
                    owner_id=owner_id,
                    encrypted_number=vault.encrypt(key, number),
                    encrypted_cvc=vault.encrypt(key, generate_cvc()),
                    masked_number=mask_number(number),
                    expiry=generate_expiry(),
                    brand=CardBrand.VISA,
                    currency=currency,
                    spending_limit=spending_limit or amount,
                    funding_reference=reference,
                )
            )
            await db.flush()
            await ledger_service.apply_funding(db, card_id, reference, amount, currency)
            await db.commit()
        return card_id

    return _create


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory, rails, verifier):
    """
    Async HTTP test client with the test database and fake rails injected.

    get_db is overridden with the same commit rules as production: business
    rule rejections still commit so audit rows persist.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except CardEngineError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    configure_state(app, session_factory, rails, verifier=verifier)
    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def session_headers(client):
    """Open a key session through the API and return its Authorization header."""

    async def _open(identity: str = IDENTITY) -> dict[str, str]:
        challenge = await client.post("/sessions/challenge", json={"identity": identity})
        assert challenge.status_code == 200, challenge.text
        token = challenge.json()["challenge"]
        response = await client.post(
            "/sessions",
            json={"identity": identity, "challenge": token, "signature": sign(identity, token)},
        )
        assert response.status_code == 201, f"Session open failed: {response.text}"
        return {"Authorization": f"Bearer {response.json()['token']}"}

    return _open


@pytest_asyncio.fixture
async def authenticated_client(client, session_headers):
    """Test client with an open key session for IDENTITY."""
    client.headers.update(await session_headers(IDENTITY))
    return client
