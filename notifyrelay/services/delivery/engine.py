from __future__ import annotations

from dataclasses import dataclass

from notifyrelay.core.config import Settings, get_settings
from notifyrelay.domain.state import CHANNEL_EMAIL, CHANNEL_PUSH
from notifyrelay.persistence.stores import StoreBundle
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager
from notifyrelay.services.delivery.mailer import (
    EmailAddressResolver,
    EmailDispatcher,
    EmailTransport,
    SmtpEmailTransport,
    StaticEmailAddressResolver,
)
from notifyrelay.services.delivery.poller import QueuePoller
from notifyrelay.services.delivery.preferences import PreferenceResolver
from notifyrelay.services.delivery.processor import JobProcessor
from notifyrelay.services.delivery.push import FcmGatewaySender, PushDispatcher, PushSender, PyWebPushSender
from notifyrelay.services.delivery.result_log import ResultLogger
from notifyrelay.services.delivery.retry import RetryController, retry_policy_from_settings


@dataclass(frozen=True)
class DeliveryEngine:
    stores: StoreBundle
    lifecycle: SubscriptionLifecycleManager
    results: ResultLogger
    processor: JobProcessor
    poller: QueuePoller


def build_delivery_engine(
    stores: StoreBundle,
    *,
    settings: Settings | None = None,
    web_sender: PushSender | None = None,
    mobile_sender: PushSender | None = None,
    email_transport: EmailTransport | None = None,
    addresses: EmailAddressResolver | None = None,
    retry: RetryController | None = None,
) -> DeliveryEngine:
    # Wire the engine from settings; tests swap providers through the keyword overrides.
    settings = settings or get_settings()
    lifecycle = SubscriptionLifecycleManager(stores.subscriptions)
    results = ResultLogger(stores.logs)
    retry = retry or RetryController(retry_policy_from_settings(settings))
    push = PushDispatcher(
        subscriptions=stores.subscriptions,
        lifecycle=lifecycle,
        web_sender=web_sender or PyWebPushSender.from_settings(settings),
        mobile_sender=mobile_sender or FcmGatewaySender.from_settings(settings),
        send_timeout_ms=settings.push_send_timeout_ms,
    )
    email = EmailDispatcher(
        transport=email_transport or SmtpEmailTransport.from_settings(settings),
        addresses=addresses or StaticEmailAddressResolver(settings.email_default_address),
        sender=settings.email_from,
    )
    processor = JobProcessor(
        jobs=stores.jobs,
        preferences=PreferenceResolver(stores.preferences),
        dispatchers={CHANNEL_PUSH: push, CHANNEL_EMAIL: email},
        retry=retry,
        results=results,
        dispatch_timeout_ms=settings.dispatch_timeout_ms,
        write_attempts=settings.notify_write_retry_attempts,
        write_backoff_ms=settings.notify_write_retry_backoff_ms,
        claim_lease_ms=settings.dispatch_timeout_ms + settings.notify_claim_lease_margin_ms,
    )
    poller = QueuePoller(
        jobs=stores.jobs,
        processor=processor,
        max_attempts=retry.policy.max_attempts_per_channel,
        interval_s=settings.notify_poll_interval_s,
        batch_size=settings.notify_batch_size,
    )
    return DeliveryEngine(
        stores=stores,
        lifecycle=lifecycle,
        results=results,
        processor=processor,
        poller=poller,
    )
