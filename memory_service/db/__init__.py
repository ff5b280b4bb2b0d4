from .database import (
    get_db,
    init_db,
    close_db,
    get_engine,
    get_sessionmaker,
    insert_for,
    create_engine_from_settings,
)
from .models import (
    Base,
    Memory,
    Prompt,
)

__all__ = [
    # Database
    "get_db",
    "init_db",
    "close_db",
    "get_engine",
    "get_sessionmaker",
    "insert_for",
    "create_engine_from_settings",
    # Models
    "Base",
    "Memory",
    "Prompt",
]
