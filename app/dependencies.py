"""FastAPI dependency providers for the session engine and its collaborators."""

from functools import lru_cache

from app.config import settings
from app.database import SessionLocal
from app.services.adapters import AdapterRegistry
from app.services.llm_client import build_default_registry
from app.services.persistence import PersistenceEngine
from app.services.session_engine import SessionRegistry

_session_registry = SessionRegistry(capacity=settings.SESSION_CAPACITY)


@lru_cache()
def get_adapter_registry() -> AdapterRegistry:
    return build_default_registry(settings)


def get_persistence() -> PersistenceEngine:
    return PersistenceEngine(SessionLocal)


def get_session_registry() -> SessionRegistry:
    return _session_registry
