from notiflow.services.notifications.compliance import (
    ChannelValidation,
    load_tenant_notification_settings,
    validate_tenant_channel,
)
from notiflow.services.notifications.fanout import build_queue_entries, insert_queue_entries
from notiflow.services.notifications.loops import (
    Clock,
    NotificationQueueLoops,
    PeriodicTask,
    SystemClock,
    build_queue_loops,
)
from notiflow.services.notifications.messages import (
    create_message,
    get_message_stats,
    list_dead_letters,
    list_messages,
    publish_enqueue_request,
)
from notiflow.services.notifications.processor import (
    derive_message_status,
    process_queue_batch,
    update_message_statuses,
)
from notiflow.services.notifications.retry import (
    RetryDecision,
    RetryOptions,
    apply_retry_policy,
    calculate_backoff_ms,
)
from notiflow.services.notifications.rollup import deliverability_metrics, rollup_deliverability_events
from notiflow.services.notifications.scheduler import (
    enqueue_due_messages,
    enqueue_message,
    select_due_messages,
)
from notiflow.services.notifications.segments import (
    Recipient,
    Segment,
    build_segment_predicate,
    resolve_recipients,
)
from notiflow.services.notifications.senders import (
    QueuedMessage,
    SendRequest,
    SendResult,
    Sender,
    SimulatedSender,
    WebhookSender,
    build_sender,
)

__all__ = [
    "ChannelValidation",
    "load_tenant_notification_settings",
    "validate_tenant_channel",
    "build_queue_entries",
    "insert_queue_entries",
    "Clock",
    "SystemClock",
    "PeriodicTask",
    "NotificationQueueLoops",
    "build_queue_loops",
    "create_message",
    "list_messages",
    "get_message_stats",
    "list_dead_letters",
    "publish_enqueue_request",
    "derive_message_status",
    "process_queue_batch",
    "update_message_statuses",
    "RetryOptions",
    "RetryDecision",
    "calculate_backoff_ms",
    "apply_retry_policy",
    "rollup_deliverability_events",
    "deliverability_metrics",
    "select_due_messages",
    "enqueue_message",
    "enqueue_due_messages",
    "Segment",
    "Recipient",
    "build_segment_predicate",
    "resolve_recipients",
    "QueuedMessage",
    "SendRequest",
    "SendResult",
    "Sender",
    "SimulatedSender",
    "WebhookSender",
    "build_sender",
]
