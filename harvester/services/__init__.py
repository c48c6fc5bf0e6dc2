# harvester/services/__init__.py
"""External service adapters"""

# Adapters are imported directly where needed; core modules import services
# and services import core.exceptions, so nothing is re-exported here.

__all__ = []
