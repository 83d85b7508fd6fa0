from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

from .cache_store import CacheRepository, CachedInvoice
from .call_window import is_within_call_window
from .channels import DEFAULT_SMS_MIN_DAYS_BEFORE, select_channel
from .contacts import is_valid_e164, mask_phone, to_e164
from .errors import ErrorKind, RemoteSourceError, SendError
from .models import Channel, DispatchRunResponse, OwnerDispatchSummary, ReminderStatus
from .policy import PolicyConfigStore, ReminderPolicyConfig
from .remote_source import RemoteRecordSource
from .reminder_store import ReminderRecord, ReminderRepository
from .senders import SendTimeoutError, SmsSender, VoiceCallContext, VoiceDispatcher, format_sms_message
from .sync import invoice_snapshot

logger = logging.getLogger(__name__)

SKIP_INVOICE_MISSING = "invoice_missing"
SKIP_NOT_COLLECTIBLE = "invoice_not_collectible"
SKIP_NO_PHONE = "missing_phone_number"
SKIP_RETRY_CEILING = "retry_ceiling_reached"
OUTCOME_SEND_TIMEOUT = "send_timeout"
OUTCOME_SEND_REJECTED = "send_rejected"
OUTCOME_CALLBACK_TIMEOUT = "callback_timeout"
DEFAULT_CALLBACK_TIMEOUT_MINUTES = 10

ResultT = TypeVar("ResultT")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CallNotStartedError(Exception):
    """The provider call was still queued when its deadline passed and was cancelled."""


class CallRunner:
    """Runs blocking provider calls on a worker thread with a per-call deadline.

    A call that misses its deadline keeps running in the background; the caller only stops
    waiting for it. A call still queued behind it is cancelled instead of being reported as
    a timed-out send.
    """

    def __init__(self, *, timeout_seconds: float, max_workers: int = 1) -> None:
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reminder-send")

    def run(self, fn: Callable[..., ResultT], *args: object) -> ResultT:
        future: Future[ResultT] = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError as exc:
            if future.cancel():
                raise CallNotStartedError(
                    f"provider call did not start within {self._timeout_seconds:.0f}s"
                ) from exc
            raise SendTimeoutError(f"provider call exceeded {self._timeout_seconds:.0f}s") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class Dispatcher:
    """Sends due reminders, one owner at a time per worker, earliest first.

    Each owner gets its own call runner so a stalled provider call only holds up the
    owner that made it. When a source is given, the invoice is re-read from it right
    before sending and the cache is refreshed with what comes back.
    """

    def __init__(
        self,
        *,
        cache: CacheRepository,
        reminders: ReminderRepository,
        policies: PolicyConfigStore,
        sms_sender: SmsSender,
        voice_dispatcher: VoiceDispatcher,
        call_timeout_seconds: float = 30.0,
        max_workers: int = 4,
        sms_min_days_before: int = DEFAULT_SMS_MIN_DAYS_BEFORE,
        company_name: str = "",
        support_phone: str = "",
        source: RemoteRecordSource | None = None,
        callback_timeout_minutes: int = DEFAULT_CALLBACK_TIMEOUT_MINUTES,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._cache = cache
        self._reminders = reminders
        self._policies = policies
        self._sms_sender = sms_sender
        self._voice_dispatcher = voice_dispatcher
        self._call_timeout_seconds = call_timeout_seconds
        self._max_workers = max(1, max_workers)
        self._sms_min_days_before = sms_min_days_before
        self._company_name = company_name
        self._support_phone = support_phone
        self._source = source
        self._callback_timeout = timedelta(minutes=max(1, callback_timeout_minutes))
        self._clock = clock

    def run(self, *, now: datetime | None = None, owner_ids: list[str] | None = None) -> DispatchRunResponse:
        run_at = now or self._clock()
        expired = self.expire_stale(now=run_at, owner_ids=owner_ids)
        targets = owner_ids if owner_ids is not None else self._reminders.list_due_owner_ids(now=run_at)
        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="reminder-owner") as pool:
            summaries = list(pool.map(lambda owner_id: self.dispatch_owner(owner_id, now=run_at), targets))

        response = DispatchRunResponse(run_at=run_at, owners=summaries, expired=expired)
        for summary in summaries:
            if summary.config_missing:
                response.owners_skipped.append(summary.owner_id)
            response.evaluated += summary.evaluated
            response.dispatched += summary.dispatched
            response.deferred += summary.deferred
            response.skipped += summary.skipped
            response.failed += summary.failed
        logger.info(
            "dispatch run: owners=%s evaluated=%s dispatched=%s deferred=%s skipped=%s failed=%s expired=%s owners_skipped=%s",
            len(summaries),
            response.evaluated,
            response.dispatched,
            response.deferred,
            response.skipped,
            response.failed,
            response.expired,
            len(response.owners_skipped),
        )
        return response

    def expire_stale(self, *, now: datetime | None = None, owner_ids: list[str] | None = None) -> int:
        """Fail queued or in-progress reminders whose status callback never arrived."""
        current_time = now or self._clock()
        expired = 0
        for reminder in self._reminders.list_in_flight_before(current_time - self._callback_timeout):
            if owner_ids is not None and reminder.owner_id not in owner_ids:
                continue
            self._reminders.save(
                replace(
                    reminder,
                    status=ReminderStatus.FAILED,
                    outcome={
                        "reason": OUTCOME_CALLBACK_TIMEOUT,
                        "previous_status": reminder.status.value,
                        "recorded_at": current_time.isoformat(),
                    },
                )
            )
            expired += 1
            logger.warning(
                "reminder %s stuck %s since %s with no callback; marked failed",
                reminder.reminder_id,
                reminder.status.value,
                reminder.last_attempt_at.isoformat() if reminder.last_attempt_at else "unknown",
            )
        return expired

    def dispatch_owner(self, owner_id: str, *, now: datetime | None = None) -> OwnerDispatchSummary:
        summary = OwnerDispatchSummary(owner_id=owner_id)
        config = self._policies.get_config(owner_id)
        if config is None:
            summary.config_missing = True
            logger.warning("owner %s has no reminder policy; dispatch skipped", owner_id)
            return summary

        current_time = now or self._clock()
        runner = CallRunner(timeout_seconds=self._call_timeout_seconds)
        try:
            for reminder in self._reminders.list_due(owner_id, now=current_time):
                summary.evaluated += 1
                try:
                    self._process(reminder, config, summary, runner=runner, now=current_time)
                except CallNotStartedError as exc:
                    # The runner is still busy with an earlier stalled call.
                    summary.deferred += 1
                    logger.warning(
                        "owner %s pass stopped at reminder %s: %s", owner_id, reminder.reminder_id, exc
                    )
                    break
                except Exception:
                    summary.errors += 1
                    logger.exception("unexpected error dispatching reminder %s", reminder.reminder_id)
        finally:
            runner.close()
        return summary

    def _skip(self, reminder: ReminderRecord, reason: str, summary: OwnerDispatchSummary, now: datetime) -> None:
        self._reminders.save(
            replace(
                reminder,
                status=ReminderStatus.SKIPPED,
                outcome={"reason": reason, "recorded_at": now.isoformat()},
            )
        )
        summary.skipped += 1
        summary.skip_reasons[reason] = summary.skip_reasons.get(reason, 0) + 1
        logger.info("reminder %s skipped: %s", reminder.reminder_id, reason)

    def _process(
        self,
        reminder: ReminderRecord,
        config: ReminderPolicyConfig,
        summary: OwnerDispatchSummary,
        *,
        runner: CallRunner,
        now: datetime,
    ) -> None:
        invoice = self._cache.get_invoice(reminder.invoice_id)
        if invoice is None:
            self._skip(reminder, SKIP_INVOICE_MISSING, summary, now)
            return
        if not invoice.status.collectible:
            self._skip(reminder, SKIP_NOT_COLLECTIBLE, summary, now)
            return
        customer = None if invoice.customer_id is None else self._cache.get_customer(invoice.customer_id)
        phone = None if customer is None else customer.primary_phone
        if not phone:
            self._skip(reminder, SKIP_NO_PHONE, summary, now)
            return
        if reminder.attempt_count >= config.max_retry_attempts:
            self._skip(reminder, SKIP_RETRY_CEILING, summary, now)
            return
        if not is_within_call_window(config, now):
            summary.deferred += 1
            return

        channel = select_channel(
            reminder.reminder_type,
            smart_mode=config.smart_mode,
            manual_channel=config.manual_channel,
            sms_min_days_before=self._sms_min_days_before,
        )
        if self._contacted_today_on_other_channel(reminder, channel, config, now):
            summary.deferred += 1
            logger.info(
                "reminder %s deferred; invoice already contacted today by a different channel",
                reminder.reminder_id,
            )
            return

        if self._source is not None:
            try:
                invoice = self._refresh_invoice(self._source, invoice, now)
            except RemoteSourceError as exc:
                if exc.kind is ErrorKind.DATA and exc.code == "not_found":
                    self._skip(reminder, SKIP_INVOICE_MISSING, summary, now)
                    return
                summary.deferred += 1
                logger.warning(
                    "reminder %s deferred; could not verify invoice %s: %s",
                    reminder.reminder_id,
                    invoice.invoice_number,
                    exc.message,
                )
                return
            if not invoice.status.collectible:
                self._skip(reminder, SKIP_NOT_COLLECTIBLE, summary, now)
                return

        customer_name = customer.display_name if customer is not None else ""
        attempts = reminder.attempt_count + 1
        try:
            external_id, session_ref = self._send(
                channel, reminder, invoice, phone, customer_name, config, runner=runner, now=now
            )
        except SendTimeoutError as exc:
            self._reminders.save(
                replace(
                    reminder,
                    attempt_count=attempts,
                    last_attempt_at=now,
                    channel=channel,
                    outcome=_failure_outcome(OUTCOME_SEND_TIMEOUT, exc, now),
                )
            )
            summary.timed_out += 1
            logger.warning(
                "reminder %s %s send timed out for %s; left pending",
                reminder.reminder_id,
                channel.value,
                mask_phone(phone),
            )
            return
        except SendError as exc:
            self._record_rejection(reminder, config, summary, exc, channel=channel, attempts=attempts, now=now)
            return

        status = ReminderStatus.QUEUED if channel is Channel.SMS else ReminderStatus.IN_PROGRESS
        self._reminders.save(
            replace(
                reminder,
                status=status,
                attempt_count=attempts,
                last_attempt_at=now,
                channel=channel,
                external_id=external_id,
                session_ref=session_ref,
                outcome=None,
            )
        )
        summary.dispatched += 1
        logger.info(
            "reminder %s (%s) dispatched via %s to %s",
            reminder.reminder_id,
            reminder.reminder_type.label,
            channel.value,
            mask_phone(phone),
        )

    def _contacted_today_on_other_channel(
        self, reminder: ReminderRecord, channel: Channel, config: ReminderPolicyConfig, now: datetime
    ) -> bool:
        local_today = now.astimezone(config.zone).date()
        for other in self._reminders.list_for_invoice(reminder.invoice_id):
            if other.reminder_id == reminder.reminder_id or other.channel in (None, channel):
                continue
            if other.external_id is None or other.last_attempt_at is None:
                continue
            if other.last_attempt_at.astimezone(config.zone).date() == local_today:
                return True
        return False

    def _refresh_invoice(self, source: RemoteRecordSource, invoice: CachedInvoice, now: datetime) -> CachedInvoice:
        record = source.get_invoice(invoice.owner_id, invoice.remote_invoice_id)
        result = self._cache.upsert_invoice(invoice.owner_id, invoice_snapshot(record), now=now)
        if result.changes.status_changed:
            logger.info(
                "invoice %s is now %s according to the remote source",
                result.invoice.invoice_number,
                result.invoice.status.value,
            )
        return result.invoice

    def _send(
        self,
        channel: Channel,
        reminder: ReminderRecord,
        invoice: CachedInvoice,
        phone: str,
        customer_name: str,
        config: ReminderPolicyConfig,
        *,
        runner: CallRunner,
        now: datetime,
    ) -> tuple[str, str | None]:
        recipient = to_e164(phone)
        if not is_valid_e164(recipient):
            raise SendError(
                ErrorKind.DATA,
                "invalid_phone_number",
                f"phone number is not a valid E.164 number (recipient: {mask_phone(phone)})",
            )
        if channel is Channel.SMS:
            message = format_sms_message(
                customer_name=customer_name,
                invoice_number=invoice.invoice_number,
                amount=invoice.balance,
                currency=invoice.currency,
                due_date=invoice.due_date,
                company_name=self._company_name,
            )
            accepted = runner.run(self._sms_sender.send_sms, recipient, message)
            return accepted.provider_message_id, None

        local_today = now.astimezone(config.zone).date()
        context = VoiceCallContext(
            reminder_id=reminder.reminder_id,
            phone=recipient,
            customer_name=customer_name,
            invoice_number=invoice.invoice_number,
            amount_due=invoice.balance,
            original_amount=invoice.total,
            currency=invoice.currency,
            due_date=invoice.due_date,
            days_until_due=(invoice.due_date - local_today).days,
            company_name=self._company_name,
            support_phone=self._support_phone,
        )
        call = runner.run(self._voice_dispatcher.dispatch_call, context)
        return call.provider_call_id, call.session_ref

    def _record_rejection(
        self,
        reminder: ReminderRecord,
        config: ReminderPolicyConfig,
        summary: OwnerDispatchSummary,
        exc: SendError,
        *,
        channel: Channel,
        attempts: int,
        now: datetime,
    ) -> None:
        if not exc.retryable or attempts >= config.max_retry_attempts:
            reason = exc.code if not exc.retryable else SKIP_RETRY_CEILING
            self._reminders.save(
                replace(
                    reminder,
                    status=ReminderStatus.FAILED,
                    attempt_count=attempts,
                    last_attempt_at=now,
                    channel=channel,
                    outcome=_failure_outcome(reason, exc, now),
                )
            )
            summary.failed += 1
            logger.warning(
                "reminder %s failed after %s attempts: %s (%s)",
                reminder.reminder_id,
                attempts,
                exc.code,
                exc.kind.value,
            )
            return

        self._reminders.save(
            replace(
                reminder,
                scheduled_at=reminder.scheduled_at + timedelta(hours=config.retry_delay_hours),
                attempt_count=attempts,
                last_attempt_at=now,
                channel=channel,
                outcome=_failure_outcome(OUTCOME_SEND_REJECTED, exc, now),
            )
        )
        summary.retried += 1
        logger.info(
            "reminder %s send rejected (%s); retry in %sh, attempt %s of %s",
            reminder.reminder_id,
            exc.code,
            config.retry_delay_hours,
            attempts,
            config.max_retry_attempts,
        )


def _failure_outcome(reason: str, exc: SendError, now: datetime) -> dict[str, object]:
    return {
        "reason": reason,
        "kind": exc.kind.value,
        "code": exc.code,
        "message": exc.message,
        "recorded_at": now.isoformat(),
    }
