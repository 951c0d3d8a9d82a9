"""Database package for the provider ingestion pipeline."""
from db.connection import dispose_engine, get_db, get_engine

__all__ = ["get_engine", "get_db", "dispose_engine"]
