from .store_base import ProcurementStoreBase
from .memory import InMemoryProcurementStore
from .sqlite import SQLiteProcurementStore

__all__ = ["ProcurementStoreBase", "InMemoryProcurementStore", "SQLiteProcurementStore"]
