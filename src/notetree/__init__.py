"""
notetree - folders and notes kept as a tree with optimistic local edits.

The core is a generic hierarchical CRUD engine: callers mutate an in-memory
forest (create, update, delete, move, reorder), see the result immediately,
and the engine reconciles with the backing store or rolls back on failure.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("notetree")
except PackageNotFoundError:
    __version__ = "0.1.0"
