"""
Tag store
External side channel receiving add_tag / remove_tag actions
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set

from ..core.config import settings
from ..core.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)


class TagStore(ABC):
    """Tag side-channel contract"""

    @abstractmethod
    async def add_tag(self, conversation_id: str, tag: str) -> None:
        """Attach a tag to a conversation"""

    @abstractmethod
    async def remove_tag(self, conversation_id: str, tag: str) -> None:
        """Detach a tag from a conversation"""


class InMemoryTagStore(TagStore):
    def __init__(self):
        self.tags: Dict[str, Set[str]] = {}

    async def add_tag(self, conversation_id: str, tag: str) -> None:
        self.tags.setdefault(conversation_id, set()).add(tag)

    async def remove_tag(self, conversation_id: str, tag: str) -> None:
        self.tags.get(conversation_id, set()).discard(tag)

    def get_tags(self, conversation_id: str) -> Set[str]:
        return set(self.tags.get(conversation_id, set()))


class SupabaseTagStore(TagStore):
    """Tags kept as (conversation_id, tag) rows"""

    def __init__(self, client=None, table: Optional[str] = None):
        self.client = client or get_supabase_client()
        self.table = table or settings.TAGS_TABLE

    async def add_tag(self, conversation_id: str, tag: str) -> None:
        self.client.table(self.table).upsert(
            {"conversation_id": conversation_id, "tag": tag},
            on_conflict="conversation_id,tag"
        ).execute()
        logger.info(f"Tag '{tag}' added to conversation {conversation_id}")

    async def remove_tag(self, conversation_id: str, tag: str) -> None:
        self.client.table(self.table).delete().eq(
            "conversation_id", conversation_id
        ).eq("tag", tag).execute()
        logger.info(f"Tag '{tag}' removed from conversation {conversation_id}")


def create_tag_store(backend: Optional[str] = None) -> TagStore:
    """Factory function to create the configured tag store"""
    backend = backend or settings.STORE_BACKEND
    if backend == "supabase":
        return SupabaseTagStore()
    return InMemoryTagStore()
