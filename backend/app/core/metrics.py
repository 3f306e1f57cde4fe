"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY


def _counter(name: str, documentation: str, labels=()):
    # Module may be imported twice under test reloads; reuse the registered collector
    try:
        return Counter(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


def _gauge(name: str, documentation: str, labels=()):
    try:
        return Gauge(name, documentation, list(labels))
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'marketplace_webhook_events_total',
    'Stripe webhook deliveries by event kind and outcome',
    ['kind', 'outcome']
)

# Reconciliation metrics
orders_reconciled_counter = _counter(
    'marketplace_orders_reconciled_total',
    'Order reconciliation results by path (webhook, finalize, free) and outcome',
    ['path', 'outcome']
)

membership_events_counter = _counter(
    'marketplace_membership_events_total',
    'Subscription lifecycle events applied to memberships',
    ['kind']
)

membership_cancellations_counter = _counter(
    'marketplace_membership_cancellations_total',
    'Membership cancellation requests by outcome',
    ['outcome']
)

ghost_users_created_counter = _counter(
    'marketplace_ghost_users_created_total',
    'Placeholder accounts created for guest buyers'
)

connect_syncs_counter = _counter(
    'marketplace_connect_syncs_total',
    'Connect account state syncs by trigger',
    ['trigger']
)

# Notification metrics
notifications_counter = _counter(
    'marketplace_notifications_total',
    'Notification deliveries by type and outcome',
    ['type', 'outcome']
)

task_queue_depth_gauge = _gauge(
    'marketplace_task_queue_depth',
    'Number of tasks waiting in a queue',
    ['task_type']
)

# Cleanup metrics
cleanup_runs_counter = _counter(
    'marketplace_cleanup_runs_total',
    'Total number of cleanup job runs',
    ['status']
)

cleanup_rows_removed_counter = _counter(
    'marketplace_cleanup_rows_removed_total',
    'Rows removed by the cleanup job',
    ['table']
)
