from notifyrelay.services.delivery.engine import DeliveryEngine, build_delivery_engine
from notifyrelay.services.delivery.lifecycle import SubscriptionLifecycleManager
from notifyrelay.services.delivery.mailer import EmailDispatcher, SmtpEmailTransport, StaticEmailAddressResolver
from notifyrelay.services.delivery.poller import QueuePoller
from notifyrelay.services.delivery.preferences import PreferenceResolver
from notifyrelay.services.delivery.processor import JobProcessor, ProcessOutcome
from notifyrelay.services.delivery.push import FcmGatewaySender, PushDispatcher, PyWebPushSender
from notifyrelay.services.delivery.result_log import ResultLogger
from notifyrelay.services.delivery.retry import RetryController, RetryDecision, RetryPolicy

__all__ = [
    "DeliveryEngine",
    "EmailDispatcher",
    "FcmGatewaySender",
    "JobProcessor",
    "PreferenceResolver",
    "ProcessOutcome",
    "PushDispatcher",
    "PyWebPushSender",
    "QueuePoller",
    "ResultLogger",
    "RetryController",
    "RetryDecision",
    "RetryPolicy",
    "SmtpEmailTransport",
    "StaticEmailAddressResolver",
    "SubscriptionLifecycleManager",
    "build_delivery_engine",
]
