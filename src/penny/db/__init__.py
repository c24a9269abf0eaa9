from .kv_store import MemoryKeyValueStore, SQLiteKeyValueStore

__all__ = ['MemoryKeyValueStore', 'SQLiteKeyValueStore']
