from __future__ import annotations

from dataclasses import dataclass

from .cache_store import CacheRepository, create_cache_repository
from .config import Settings
from .delivery import DeliveryReconciler
from .dispatcher import Dispatcher
from .policy import PolicyConfigStore, create_policy_config_store
from .remote_source import HttpRemoteRecordSource, RemoteRecordSource, StaticTokenProvider, StubRemoteRecordSource
from .reminder_store import ReminderRepository, create_reminder_repository
from .senders import (
    HttpVoiceDispatcher,
    SmsSender,
    StubSmsSender,
    StubVoiceDispatcher,
    TwilioSmsSender,
    VoiceDispatcher,
)
from .sync import SyncOrchestrator


def _create_source(settings: Settings) -> RemoteRecordSource:
    if settings.remote_source_type == "http":
        return HttpRemoteRecordSource(
            base_url=settings.remote_api_base_url,
            token_provider=StaticTokenProvider(settings.remote_api_token),
            timeout_seconds=settings.call_timeout_seconds,
        )
    return StubRemoteRecordSource()


def _create_sms_sender(settings: Settings) -> SmsSender:
    if settings.sms_sender_type == "twilio":
        return TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            status_callback_url=settings.twilio_status_callback_url,
            timeout_seconds=settings.call_timeout_seconds,
        )
    return StubSmsSender()


def _create_voice_dispatcher(settings: Settings) -> VoiceDispatcher:
    if settings.voice_sender_type == "http":
        return HttpVoiceDispatcher(
            base_url=settings.voice_api_base_url,
            api_key=settings.voice_api_key,
            timeout_seconds=settings.call_timeout_seconds,
        )
    return StubVoiceDispatcher()


@dataclass
class ReminderEngine:
    """Stores and provider clients shared by the API and the periodic worker."""

    settings: Settings
    cache: CacheRepository
    reminders: ReminderRepository
    policies: PolicyConfigStore
    source: RemoteRecordSource
    sms_sender: SmsSender
    voice_dispatcher: VoiceDispatcher

    def sync_orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(
            source=self.source,
            cache=self.cache,
            reminders=self.reminders,
            policies=self.policies,
            page_size=self.settings.sync_page_size,
        )

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(
            cache=self.cache,
            reminders=self.reminders,
            policies=self.policies,
            sms_sender=self.sms_sender,
            voice_dispatcher=self.voice_dispatcher,
            call_timeout_seconds=self.settings.call_timeout_seconds,
            max_workers=self.settings.dispatch_max_workers,
            sms_min_days_before=self.settings.smart_mode_sms_min_days_before,
            company_name=self.settings.business_name,
            support_phone=self.settings.support_phone,
            source=self.source if self.settings.pre_send_check_mode == "on" else None,
            callback_timeout_minutes=self.settings.callback_timeout_minutes,
        )

    def reconciler(self) -> DeliveryReconciler:
        return DeliveryReconciler(reminders=self.reminders)


def build_engine(settings: Settings) -> ReminderEngine:
    backend = settings.store_backend.strip().lower()
    if backend not in {"inmemory", "postgres"}:
        raise RuntimeError(f"unsupported REMINDERS_STORE_BACKEND: {settings.store_backend}")
    return ReminderEngine(
        settings=settings,
        cache=create_cache_repository(backend=backend, database_url=settings.database_url),
        reminders=create_reminder_repository(backend=backend, database_url=settings.database_url),
        policies=create_policy_config_store(backend=backend, database_url=settings.database_url),
        source=_create_source(settings),
        sms_sender=_create_sms_sender(settings),
        voice_dispatcher=_create_voice_dispatcher(settings),
    )
