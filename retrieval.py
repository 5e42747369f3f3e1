# retrieval.py - Context lookup used to enrich pipeline prompts
import logging

from components import ContextRetriever
from supabase_client import SupabaseClient

logger = logging.getLogger("Retrieval")

CONTEXT_SEPARATOR = "\n---\n"


class VectorSearchRetriever(ContextRetriever):
    """
    Calls the ``vector-search`` edge function.

    The function answers with ``[{"content": "..."}, ...]``; the contents are
    joined into one context string. Any failure degrades to no context.
    """

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def search(self, query: str) -> str:
        try:
            data = await self.client.invoke("vector-search", {"query": query}, label="Vector search")
        except Exception as e:
            logger.error("Error performing RAG search: %s", e)
            return ""
        if not isinstance(data, list):
            return ""
        contents = [
            str(item["content"]) for item in data
            if isinstance(item, dict) and item.get("content")
        ]
        return CONTEXT_SEPARATOR.join(contents)


class NullRetriever(ContextRetriever):
    async def search(self, query: str) -> str:
        return ""
