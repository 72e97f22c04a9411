"""
Engram - local semantic memory substrate.
Embedding persistence, exact nearest-neighbour retrieval and prompt context assembly.
"""

__version__ = "0.1.0"
