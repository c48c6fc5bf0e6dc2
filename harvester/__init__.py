# harvester/__init__.py
"""Creator content harvester"""

__version__ = "1.0.0"
