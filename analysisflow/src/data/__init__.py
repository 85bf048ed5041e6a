"""Persistence - asyncpg pool, the analysis repository and the API key store."""

from .api_keys import ApiKeyOwner, ApiKeyStore, PostgresApiKeyStore
from .database import DatabasePool, DatabaseConfig, create_pool_from_config
from .repository import AnalysisRepository, PostgresAnalysisRepository

__all__ = [
    'ApiKeyOwner',
    'ApiKeyStore',
    'PostgresApiKeyStore',
    'DatabasePool',
    'DatabaseConfig',
    'create_pool_from_config',
    'AnalysisRepository',
    'PostgresAnalysisRepository',
]
