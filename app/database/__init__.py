from app.database.engine import create_engine, create_sessionmaker, init_models
from app.database.models import Base, MusicCache

__all__ = ["Base", "MusicCache", "create_engine", "create_sessionmaker", "init_models"]
