"""
Durable single-writer storage for the inventory document.
"""

from .file_ops import read_json, temp_path_for, write_json_atomic
from .json_store import InventoryStore

__all__ = [
    "InventoryStore",
    "read_json",
    "temp_path_for",
    "write_json_atomic",
]
