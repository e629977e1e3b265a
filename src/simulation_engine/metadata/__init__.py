"""Contract metadata collaborator."""
from .cache import MemoryMetadataCache, MetadataCache, RedisMetadataCache
from .models import ContractMetadata
from .service import ContractMetadataService

__all__ = [
    "ContractMetadata",
    "ContractMetadataService",
    "MemoryMetadataCache",
    "MetadataCache",
    "RedisMetadataCache",
]
