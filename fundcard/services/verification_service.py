"""
Payment verifier — owns the funding-intent state machine.

    requested -> pending -> {successful | failed | timed_out}

Who moves an intent:
  - request_payment(): requested -> pending, once the rail accepted the request
  - poll_once():       pending -> successful | failed, only on an explicit
                       terminal status reported by the rail
  - the deadline:      requested | pending -> timed_out, once
                       now >= created_at + POLL_TIMEOUT_SECONDS and a final
                       rail query reported nothing terminal

Nothing else can move it, and nothing moves a terminal intent. Every
transition is a conditional UPDATE (WHERE status IN <allowed sources>), so
the rule holds across processes, not just inside this one.

Polling:
  start_polling() runs one asyncio task per reference. A cycle starts only
  after the previous rail response (or failure) has been handled, so polls
  for the same intent never overlap. A RailError on one poll is logged and
  retried on the next tick; it never transitions the intent.

Cancellation:
  Cancelling the polling task directly or via cancel() stops further polls
  and leaves the intent as it was. Callers awaiting resolve() share the task;
  it is cancelled only once the last of them is cancelled. A later
  poll_once() for the same reference still observes whatever the rail
  eventually reports.

Sessions:
  Each step opens its own short session from the injected session factory.
  No session is held open across a rail call.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fundcard.config import settings
from fundcard.database import insert_if_absent
from fundcard.exceptions import FundingIntentNotFoundError, RailError, UnauthorizedAccessError, ValidationError
from fundcard.models.funding_intent import (
    ALLOWED_TRANSITIONS,
    FundingIntent,
    IntentPurpose,
    IntentStatus,
    RailKind,
)
from fundcard.rails.base import PaymentRail, PaymentRequest, RailStatus, RailStatusReport
from fundcard.rails.mobile_money import validate_payer
from fundcard.services.fee_service import calculate_fee, validate_amount

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_reference() -> str:
    return f"fund_{uuid.uuid4().hex}"


class PaymentVerifier:
    """
    Resolves funding intents against their payment rail.

    Args:
        session_factory: async_sessionmaker used for every database step.
        rails: Dispatch table, one PaymentRail per RailKind.
        poll_interval: Seconds between polls (POLL_INTERVAL_SECONDS).
        timeout: Seconds from creation to forced timeout (POLL_TIMEOUT_SECONDS).
        clock: Returns the current UTC time.
        sleep: Awaitable sleep used between polls.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rails: dict[RailKind, PaymentRail],
        *,
        poll_interval: float | None = None,
        timeout: float | None = None,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._rails = rails
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL_SECONDS
        self.timeout = timeout if timeout is not None else settings.POLL_TIMEOUT_SECONDS
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}
        self._request_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._waiters: defaultdict[str, int] = defaultdict(int)

    # -----------------------------------------------------------------------
    # Intent creation and lookup
    # -----------------------------------------------------------------------

    async def create_intent(
        self,
        *,
        owner_id: str,
        rail: RailKind,
        amount,
        currency: str | None = None,
        reference: str | None = None,
        payer: str | None = None,
        purpose: IntentPurpose = IntentPurpose.ISSUANCE,
        card_id: uuid.UUID | None = None,
    ) -> FundingIntent:
        """
        Create a funding intent in `requested`, or return the existing one.

        The amount (and the payer, for mobile money) is validated before
        anything is written. Reusing a reference returns the stored intent
        unchanged as long as it belongs to the same owner and amount.

        Raises:
            ValidationError: Bad amount or payer, or the reference is already
                used for a different amount.
            UnauthorizedAccessError: The reference belongs to another owner.
        """
        validated = validate_amount(amount)
        if rail is RailKind.MOBILE_MONEY:
            payer = validate_payer(payer)
        if rail not in self._rails:
            raise ValidationError(f"Rail {rail.value} is not configured")

        breakdown = calculate_fee(validated)
        reference = reference or new_reference()
        now = self._clock()

        async with self._session_factory() as db:
            inserted = await insert_if_absent(
                db,
                FundingIntent,
                {
                    "id": uuid.uuid4(),
                    "reference": reference,
                    "rail": rail,
                    "purpose": purpose,
                    "owner_id": owner_id,
                    "card_id": card_id,
                    "amount": validated,
                    "fee": breakdown.fee,
                    "total": breakdown.total,
                    "currency": (currency or settings.DEFAULT_CURRENCY).upper(),
                    "payer": payer,
                    "status": IntentStatus.REQUESTED,
                    "deadline_at": now + timedelta(seconds=self.timeout),
                    "created_at": now,
                    "updated_at": now,
                },
                ["reference"],
            )
            await db.commit()
            intent = await self._load(db, reference)

        if inserted:
            logger.info(
                "Funding intent created reference=%s rail=%s amount=%s %s",
                reference,
                rail.value,
                validated,
                intent.currency,
            )
            return intent

        if intent.owner_id != owner_id:
            raise UnauthorizedAccessError("Funding reference belongs to another identity")
        if intent.amount != validated:
            raise ValidationError("Funding reference already used for a different amount")
        logger.info("Funding intent %s already exists; reusing it", reference)
        return intent

    async def get_intent(self, reference: str) -> FundingIntent:
        async with self._session_factory() as db:
            return await self._load(db, reference)

    async def _load(self, db: AsyncSession, reference: str) -> FundingIntent:
        result = await db.execute(
            select(FundingIntent)
            .where(FundingIntent.reference == reference)
            .execution_options(populate_existing=True)
        )
        intent = result.scalar_one_or_none()
        if intent is None:
            raise FundingIntentNotFoundError(reference)
        return intent

    def _rail(self, kind: RailKind) -> PaymentRail:
        try:
            return self._rails[kind]
        except KeyError:
            raise ValidationError(f"Rail {kind.value} is not configured") from None

    # -----------------------------------------------------------------------
    # Transitions
    # -----------------------------------------------------------------------

    async def _transition(
        self,
        reference: str,
        target: IntentStatus,
        **fields,
    ) -> FundingIntent:
        """
        Move the intent to `target` if its current status allows it.

        A refused move (the row was already moved elsewhere) is not an error;
        the stored intent is returned as it is.
        """
        now = self._clock()
        values = {"status": target, "updated_at": now, **fields}
        if target.is_terminal:
            values["resolved_at"] = now

        async with self._session_factory() as db:
            result = await db.execute(
                update(FundingIntent)
                .where(FundingIntent.reference == reference)
                .where(FundingIntent.status.in_(ALLOWED_TRANSITIONS[target]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            moved = result.rowcount == 1
            intent = await self._load(db, reference)

        if moved:
            log = logger.warning if target is IntentStatus.TIMED_OUT else logger.info
            log("Funding intent %s -> %s", reference, target.value)
        return intent

    def _deadline_passed(self, intent: FundingIntent) -> bool:
        return self._clock() >= as_utc(intent.deadline_at)

    async def request_payment(self, reference: str) -> FundingIntent:
        """
        Ask the rail to collect the fee-inclusive total; requested -> pending.

        Idempotent: an intent that already left `requested` is returned as is.
        The per-reference lock serialising concurrent callers is dropped as
        soon as the intent has left `requested`.

        Raises:
            RailError: The rail could not be reached or refused the request.
                The intent stays `requested` so the call can be retried.
        """
        lock = self._request_locks[reference]
        async with lock:
            intent = await self._send_request(reference)
        if intent.status is not IntentStatus.REQUESTED and self._request_locks.get(reference) is lock:
            del self._request_locks[reference]
        return intent

    async def _send_request(self, reference: str) -> FundingIntent:
        intent = await self.get_intent(reference)
        if intent.status is not IntentStatus.REQUESTED:
            return intent
        if self._deadline_passed(intent):
            return await self._transition(reference, IntentStatus.TIMED_OUT)

        rail = self._rail(intent.rail)
        rail_reference = await rail.request_payment(
            PaymentRequest(
                reference=intent.reference,
                amount=intent.total,
                currency=intent.currency,
                payer=intent.payer,
            )
        )
        return await self._transition(
            reference, IntentStatus.PENDING, rail_reference=rail_reference
        )

    def _interpret(
        self, intent: FundingIntent, report: RailStatusReport
    ) -> tuple[IntentStatus | None, dict]:
        if report.status is RailStatus.PENDING:
            return None, {}

        if report.status is RailStatus.FAILED:
            return IntentStatus.FAILED, {"failure_reason": report.reason or "rejected by rail"}

        if report.amount is not None and report.amount < intent.total:
            return IntentStatus.FAILED, {
                "failure_reason": f"amount mismatch: paid {report.amount}, expected {intent.total}",
            }
        if report.currency and report.currency.upper() != intent.currency:
            return IntentStatus.FAILED, {
                "failure_reason": f"currency mismatch: paid in {report.currency}",
            }
        return IntentStatus.SUCCESSFUL, {
            "external_transaction_id": report.external_transaction_id,
        }

    async def poll_once(self, reference: str) -> FundingIntent:
        """
        One poll cycle: query the rail, apply its answer, then check the deadline.

        A pending intent is always queried first, so a payment that settled
        just before the deadline is still recorded as successful. Only when
        the rail gives no terminal answer does a passed deadline force
        timed_out. A network failure is logged and changes nothing else.
        """
        intent = await self.get_intent(reference)
        if intent.status.is_terminal:
            return intent

        if intent.status is IntentStatus.PENDING and intent.rail_reference:
            try:
                report = await self._rail(intent.rail).query_status(intent.rail_reference)
            except RailError as exc:
                logger.warning(
                    "Poll failed for %s (rail_reference=%s): %s",
                    reference,
                    intent.rail_reference,
                    exc.detail,
                )
            else:
                target, fields = self._interpret(intent, report)
                if target is not None:
                    return await self._transition(reference, target, **fields)

        if self._deadline_passed(intent):
            return await self._transition(reference, IntentStatus.TIMED_OUT)
        return intent

    # -----------------------------------------------------------------------
    # Polling tasks
    # -----------------------------------------------------------------------

    async def _poll_until_terminal(self, reference: str) -> FundingIntent:
        try:
            while True:
                intent = await self.poll_once(reference)
                if intent.status.is_terminal:
                    return intent
                remaining = (as_utc(intent.deadline_at) - self._clock()).total_seconds()
                await self._sleep(min(self.poll_interval, max(remaining, 0.0)))
        except asyncio.CancelledError:
            logger.info("Polling cancelled for %s; intent left unchanged", reference)
            raise

    def start_polling(self, reference: str) -> asyncio.Task:
        """Start (or join) the single polling task for `reference`."""
        task = self._tasks.get(reference)
        if task is not None and not task.done():
            return task

        task = asyncio.create_task(
            self._poll_until_terminal(reference), name=f"poll:{reference}"
        )
        self._tasks[reference] = task
        task.add_done_callback(lambda t, ref=reference: self._forget(ref, t))
        return task

    def _forget(self, reference: str, task: asyncio.Task) -> None:
        if self._tasks.get(reference) is task:
            del self._tasks[reference]

    def is_polling(self, reference: str) -> bool:
        task = self._tasks.get(reference)
        return task is not None and not task.done()

    async def resolve(self, reference: str) -> FundingIntent:
        """
        Drive the intent to a terminal state and return it.

        Sends the payment request first if the intent is still `requested`.
        Concurrent callers share one polling task. A cancelled caller stops
        waiting on its own; the task itself is cancelled only when the last
        caller waiting on it goes away.
        """
        intent = await self.get_intent(reference)
        if intent.status.is_terminal:
            return intent
        if intent.status is IntentStatus.REQUESTED:
            intent = await self.request_payment(reference)
            if intent.status.is_terminal:
                return intent

        task = self.start_polling(reference)
        self._waiters[reference] += 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if self._waiters[reference] == 1 and not task.done():
                task.cancel()
            raise
        finally:
            self._waiters[reference] -= 1
            if not self._waiters[reference]:
                del self._waiters[reference]

    def cancel(self, reference: str) -> bool:
        """Stop polling `reference`. Returns False if nothing was polling it."""
        task = self._tasks.get(reference)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def close(self) -> None:
        """Cancel every polling task and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
