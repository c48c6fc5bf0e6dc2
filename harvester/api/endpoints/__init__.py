# harvester/api/endpoints/__init__.py
"""API endpoints"""

from . import runs, health

__all__ = ["runs", "health"]
