from . import admin, health, tickets

__all__ = ["admin", "health", "tickets"]
