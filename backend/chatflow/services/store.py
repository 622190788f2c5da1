"""
Execution Store
Persists flow executions keyed by (flow, conversation) with optimistic versioning
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from ..core.config import settings
from ..core.supabase_client import get_supabase_client, first_row
from ..flow.context import ExecutionContext, ExecutionStatus, create_context

logger = logging.getLogger(__name__)


class SaveResult(str, Enum):
    """Outcome of a save"""
    OK = "ok"
    CONFLICT = "conflict"


class ExecutionStore(ABC):
    """
    Read/write contract for execution records.

    save() succeeds only when the stored version equals the context's
    version; on success the context's version is incremented.
    """

    @abstractmethod
    async def load(self, flow_id: str, conversation_id: str) -> Optional[ExecutionContext]:
        """Get the execution record of a flow for a conversation"""

    @abstractmethod
    async def find_active(
        self,
        conversation_id: str,
        client_id: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> Optional[ExecutionContext]:
        """Get the active execution of a conversation, if any"""

    @abstractmethod
    async def has_any(self, conversation_id: str) -> bool:
        """Check if a conversation ever ran a flow"""

    @abstractmethod
    async def list_pending_delays(self) -> List[ExecutionContext]:
        """Active executions suspended on a delay block"""

    @abstractmethod
    async def create(
        self,
        flow_id: str,
        conversation_id: str,
        start_block_id: str,
        client_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        """Create a fresh execution, replacing any previous record for the pair"""

    @abstractmethod
    async def save(self, context: ExecutionContext) -> SaveResult:
        """Persist a context if nobody else saved it in the meantime"""


class InMemoryExecutionStore(ExecutionStore):
    """
    Process-local store.

    Records are kept serialized so callers never share mutable state with
    the store.
    """

    def __init__(self):
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def load(self, flow_id: str, conversation_id: str) -> Optional[ExecutionContext]:
        record = self.records.get((flow_id, conversation_id))
        return ExecutionContext.from_dict(record) if record else None

    async def find_active(
        self,
        conversation_id: str,
        client_id: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> Optional[ExecutionContext]:
        for (record_flow_id, record_conversation_id), record in self.records.items():
            if record_conversation_id != conversation_id:
                continue
            if flow_id and record_flow_id != flow_id:
                continue
            if client_id and record.get("client_id") not in (None, client_id):
                continue
            if record["status"] == ExecutionStatus.ACTIVE.value:
                return ExecutionContext.from_dict(record)
        return None

    async def has_any(self, conversation_id: str) -> bool:
        return any(key[1] == conversation_id for key in self.records)

    async def list_pending_delays(self) -> List[ExecutionContext]:
        return [
            ExecutionContext.from_dict(record) for record in self.records.values()
            if record["status"] == ExecutionStatus.ACTIVE.value and record.get("pending_delay_token")
        ]

    async def create(
        self,
        flow_id: str,
        conversation_id: str,
        start_block_id: str,
        client_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        context = create_context(flow_id, conversation_id, start_block_id, client_id, variables)
        context.version = 1
        self.records[(flow_id, conversation_id)] = context.to_dict()
        return context

    async def save(self, context: ExecutionContext) -> SaveResult:
        key = (context.flow_id, context.conversation_id)
        stored = self.records.get(key)

        if stored is None or stored["id"] != context.id or stored["version"] != context.version:
            logger.warning(f"Save conflict for execution {context.id} at version {context.version}")
            return SaveResult.CONFLICT

        context.version += 1
        self.records[key] = context.to_dict()
        return SaveResult.OK


class SupabaseExecutionStore(ExecutionStore):
    """
    Store backed by the executions table.

    Every record keeps a few queryable columns plus the full serialized
    context in ``state``. The version check is part of the UPDATE filter.
    """

    def __init__(self, client=None, table: Optional[str] = None):
        self.client = client or get_supabase_client()
        self.table = table or settings.EXECUTIONS_TABLE

    @staticmethod
    def _to_row(context: ExecutionContext) -> Dict[str, Any]:
        return {
            "id": context.id,
            "flow_id": context.flow_id,
            "conversation_id": context.conversation_id,
            "client_id": context.client_id,
            "status": context.status.value,
            "current_block_id": context.current_block_id,
            "version": context.version,
            "state": context.to_dict(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> ExecutionContext:
        context = ExecutionContext.from_dict(row["state"])
        context.version = row["version"]
        return context

    async def load(self, flow_id: str, conversation_id: str) -> Optional[ExecutionContext]:
        response = self.client.table(self.table).select("*").eq(
            "flow_id", flow_id
        ).eq(
            "conversation_id", conversation_id
        ).limit(1).execute()

        row = first_row(response)
        return self._from_row(row) if row else None

    async def find_active(
        self,
        conversation_id: str,
        client_id: Optional[str] = None,
        flow_id: Optional[str] = None
    ) -> Optional[ExecutionContext]:
        query = self.client.table(self.table).select("*").eq(
            "conversation_id", conversation_id
        ).eq("status", ExecutionStatus.ACTIVE.value)

        if client_id:
            query = query.or_(f"client_id.eq.{client_id},client_id.is.null")
        if flow_id:
            query = query.eq("flow_id", flow_id)

        row = first_row(query.order("updated_at", desc=True).limit(1).execute())
        return self._from_row(row) if row else None

    async def has_any(self, conversation_id: str) -> bool:
        response = self.client.table(self.table).select("id").eq(
            "conversation_id", conversation_id
        ).limit(1).execute()
        return bool(response.data)

    async def list_pending_delays(self) -> List[ExecutionContext]:
        response = self.client.table(self.table).select("*").eq(
            "status", ExecutionStatus.ACTIVE.value
        ).execute()

        contexts = [self._from_row(row) for row in response.data or []]
        return [context for context in contexts if context.pending_delay_token]

    async def create(
        self,
        flow_id: str,
        conversation_id: str,
        start_block_id: str,
        client_id: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None
    ) -> ExecutionContext:
        context = create_context(flow_id, conversation_id, start_block_id, client_id, variables)
        context.version = 1

        self.client.table(self.table).upsert(
            self._to_row(context),
            on_conflict="flow_id,conversation_id"
        ).execute()

        return context

    async def save(self, context: ExecutionContext) -> SaveResult:
        expected = context.version
        row = self._to_row(context)
        row["version"] = expected + 1
        row["state"]["version"] = expected + 1

        response = self.client.table(self.table).update(row).eq(
            "id", context.id
        ).eq("version", expected).execute()

        if not response.data:
            logger.warning(f"Save conflict for execution {context.id} at version {expected}")
            return SaveResult.CONFLICT

        context.version = expected + 1
        return SaveResult.OK


def create_execution_store(backend: Optional[str] = None) -> ExecutionStore:
    """Factory function to create the configured store"""
    backend = backend or settings.STORE_BACKEND
    if backend == "supabase":
        return SupabaseExecutionStore()
    return InMemoryExecutionStore()
