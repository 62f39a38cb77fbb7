from . import admin, health, instructor, public, tickets

__all__ = ["admin", "health", "instructor", "public", "tickets"]
