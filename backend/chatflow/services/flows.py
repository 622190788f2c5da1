"""
Flow Repository
Loads published flow graphs and keeps them cached (graphs are immutable)
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Tuple

from pydantic import ValidationError

from ..core.config import settings
from ..core.supabase_client import get_supabase_client, first_row
from ..models.flow import FlowGraph

logger = logging.getLogger(__name__)


class FlowRepository(ABC):
    """Read contract for published flows"""

    @abstractmethod
    async def get(self, flow_id: str) -> Optional[FlowGraph]:
        """Get a flow by ID"""

    @abstractmethod
    async def list_active(self, client_id: Optional[str] = None) -> List[FlowGraph]:
        """Get active flows, optionally for a single tenant"""


class InMemoryFlowRepository(FlowRepository):
    """Flows registered in-process, in registration order"""

    def __init__(self, flows: Optional[List[FlowGraph]] = None):
        self.flows: Dict[str, FlowGraph] = {}
        for graph in flows or []:
            self.add(graph)

    def add(self, graph: FlowGraph) -> FlowGraph:
        self.flows[graph.id] = graph
        logger.info(f"Registered flow '{graph.name}' ({graph.id})")
        return graph

    def remove(self, flow_id: str) -> bool:
        return self.flows.pop(flow_id, None) is not None

    async def get(self, flow_id: str) -> Optional[FlowGraph]:
        return self.flows.get(flow_id)

    async def list_active(self, client_id: Optional[str] = None) -> List[FlowGraph]:
        return [
            graph for graph in self.flows.values()
            if graph.is_active and (client_id is None or graph.client_id in (None, client_id))
        ]


class SupabaseFlowRepository(FlowRepository):
    """
    Flows read from the flows table.

    Rows map onto FlowGraph directly (trigger_qr_code is accepted as the
    trigger code). Parsed graphs are cached for FLOW_CACHE_TTL_SECONDS.
    """

    def __init__(self, client=None, table: Optional[str] = None, cache_ttl: Optional[float] = None):
        self.client = client or get_supabase_client()
        self.table = table or settings.FLOWS_TABLE
        self.cache_ttl = settings.FLOW_CACHE_TTL_SECONDS if cache_ttl is None else cache_ttl
        self._cache: Dict[str, Tuple[float, FlowGraph]] = {}

    def _parse(self, row: Dict[str, Any]) -> Optional[FlowGraph]:
        try:
            return FlowGraph.model_validate(row)
        except ValidationError as e:
            logger.error(f"Invalid flow definition {row.get('id')}: {e}")
            return None

    def _remember(self, graph: FlowGraph) -> FlowGraph:
        self._cache[graph.id] = (time.monotonic(), graph)
        return graph

    def invalidate(self, flow_id: Optional[str] = None) -> None:
        """Drop a cached flow (or all of them) after a publish"""
        if flow_id is None:
            self._cache.clear()
        else:
            self._cache.pop(flow_id, None)

    async def get(self, flow_id: str) -> Optional[FlowGraph]:
        cached = self._cache.get(flow_id)
        if cached and time.monotonic() - cached[0] < self.cache_ttl:
            return cached[1]

        row = first_row(self.client.table(self.table).select("*").eq("id", flow_id).limit(1).execute())
        if row is None:
            return None

        graph = self._parse(row)
        return self._remember(graph) if graph else None

    async def list_active(self, client_id: Optional[str] = None) -> List[FlowGraph]:
        query = self.client.table(self.table).select("*").eq("is_active", True)
        if client_id:
            query = query.or_(f"client_id.eq.{client_id},client_id.is.null")

        response = query.order("created_at").execute()

        flows = []
        for row in response.data or []:
            graph = self._parse(row)
            if graph:
                flows.append(self._remember(graph))
        return flows


def create_flow_repository(backend: Optional[str] = None) -> FlowRepository:
    """Factory function to create the configured repository"""
    backend = backend or settings.STORE_BACKEND
    if backend == "supabase":
        return SupabaseFlowRepository()
    return InMemoryFlowRepository()
