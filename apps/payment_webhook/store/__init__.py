"""Document store capability: structured queries, patch builder and backends."""

from apps.payment_webhook.store.client import SanityDocumentStore
from apps.payment_webhook.store.memory import InMemoryDocumentStore
from apps.payment_webhook.store.patch import Patch, encode_value
from apps.payment_webhook.store.query import DocumentQuery, FieldMatch

__all__ = [
    "DocumentQuery",
    "FieldMatch",
    "Patch",
    "encode_value",
    "InMemoryDocumentStore",
    "SanityDocumentStore",
]
