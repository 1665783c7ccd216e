from biofeedback_engine.storage.repository import EventRepository, InMemoryEventRepository

__all__ = ["EventRepository", "InMemoryEventRepository"]
