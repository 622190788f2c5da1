"""
Services Module
Collaborators of the flow engine: persistence, delivery, scheduling, leases

The runtime lives in ``chatflow.services.runtime`` and is imported from there.
"""

# Execution persistence
from .store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SupabaseExecutionStore,
    SaveResult,
    create_execution_store
)

# Published flows
from .flows import (
    FlowRepository,
    InMemoryFlowRepository,
    SupabaseFlowRepository,
    create_flow_repository
)

# Per-conversation leases
from .lease import LeaseManager

# Continuations
from .scheduler import (
    ContinuationScheduler,
    ScheduledContinuation,
    ContinuationStatus,
    ContinuationKind
)

# Outbound delivery (UAZAPI)
from .transport import (
    Transport,
    WhatsAppTransport,
    RecordingTransport,
    DeliveryReceipt,
    create_transport
)

# Webhook blocks
from .webhook_client import WebhookClient, WebhookResponse

# Tags
from .tags import TagStore, InMemoryTagStore, SupabaseTagStore, create_tag_store


__all__ = [
    # Store
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SupabaseExecutionStore",
    "SaveResult",
    "create_execution_store",

    # Flows
    "FlowRepository",
    "InMemoryFlowRepository",
    "SupabaseFlowRepository",
    "create_flow_repository",

    # Lease
    "LeaseManager",

    # Scheduler
    "ContinuationScheduler",
    "ScheduledContinuation",
    "ContinuationStatus",
    "ContinuationKind",

    # Transport
    "Transport",
    "WhatsAppTransport",
    "RecordingTransport",
    "DeliveryReceipt",
    "create_transport",

    # Webhook
    "WebhookClient",
    "WebhookResponse",

    # Tags
    "TagStore",
    "InMemoryTagStore",
    "SupabaseTagStore",
    "create_tag_store",
]
