"""Database layer."""

from plannerai.db.engine import close_db, get_session_factory, init_db
from plannerai.db.models import AiLog, EntityTag, Event, Note, Project, Task

__all__ = [
    "close_db",
    "get_session_factory",
    "init_db",
    "AiLog",
    "EntityTag",
    "Event",
    "Note",
    "Project",
    "Task",
]
