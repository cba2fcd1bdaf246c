"""
Storage collaborator used by the gateway.

The gateway only needs a key/value view over a few collections
(users, boards, devices, device_commands) plus an append-only stream of
device records (device_data). Real deployments plug in a database-backed
implementation; InMemoryStore serves tests and single-process setups.
"""
import copy
import threading
import time
from typing import Any, Dict, List, Optional

from log import setup_logger

logger = setup_logger(__name__)

USERS = "users"
BOARDS = "boards"
DEVICES = "devices"
DEVICE_COMMANDS = "device_commands"
DEVICE_DATA = "device_data"


class Store:
    def get(self, collection: str, key: Any) -> Optional[Dict[str, Any]]:
        raise NotImplementedError("Subclass must implement this method")

    def put(self, collection: str, key: Any, record: Dict[str, Any]):
        raise NotImplementedError("Subclass must implement this method")

    def find(self, collection: str, **criteria) -> List[Dict[str, Any]]:
        raise NotImplementedError("Subclass must implement this method")

    def append(self, stream: str, record: Dict[str, Any]):
        raise NotImplementedError("Subclass must implement this method")

    def read(self, stream: str) -> List[Dict[str, Any]]:
        raise NotImplementedError("Subclass must implement this method")

    def record_device_data(self, device_id, data_type, value, **extra):
        """Append one row to the device_data stream"""
        record = {
            "device_id": device_id,
            "data_type": data_type,
            "value": value,
            "timestamp": time.time(),
        }
        record.update(extra)
        self.append(DEVICE_DATA, record)


class InMemoryStore(Store):
    """Thread-safe dictionary store; records are copied on the way in and out"""

    def __init__(self):
        self._collections: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self._streams: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, collection, key):
        with self._lock:
            record = self._collections.get(collection, {}).get(key)
            return copy.deepcopy(record) if record is not None else None

    def put(self, collection, key, record):
        with self._lock:
            self._collections.setdefault(collection, {})[key] = copy.deepcopy(record)

    def find(self, collection, **criteria):
        with self._lock:
            rows = self._collections.get(collection, {}).values()
            return [
                copy.deepcopy(row) for row in rows
                if all(row.get(field) == value for field, value in criteria.items())
            ]

    def append(self, stream, record):
        with self._lock:
            self._streams.setdefault(stream, []).append(copy.deepcopy(record))

    def read(self, stream):
        with self._lock:
            return copy.deepcopy(self._streams.get(stream, []))
