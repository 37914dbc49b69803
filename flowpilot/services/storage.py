"""
Storage collaborator.

The engine and the token refresher only talk to storage through this
interface. MemoryStorage is the in-process implementation used by the web app
and the tests; a database-backed store implements the same methods.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from flowpilot.models.connector import Connector
from flowpilot.models.flow import Flow
from flowpilot.utils.credentials_encryption import CredentialsEncryption

logger = logging.getLogger(__name__)


class Storage(ABC):

    @abstractmethod
    def get_connector(self, owner_id: Optional[str], connector_id: str) -> Optional[Connector]:
        """Return a snapshot of the connector, or None."""

    @abstractmethod
    def update_connector_auth(self, owner_id: Optional[str], connector_id: str, auth_config: Dict[str, Any]):
        """Replace the connector's authConfig."""

    @abstractmethod
    def get_flow(self, owner_id: Optional[str], flow_id: str) -> Optional[Flow]:
        pass

    @abstractmethod
    def get_last_result(self, node_id: str) -> Any:
        pass

    @abstractmethod
    def save_last_result(self, node_id: str, result: Any):
        pass

    @abstractmethod
    def list_connectors(self, owner_id: Optional[str] = None) -> List[Connector]:
        pass


class MemoryStorage(Storage):
    """
    Thread-safe in-memory storage.

    Connector authConfig is kept encrypted when an encryption service is
    given. Every read returns a copy so callers never share mutable state.
    """

    def __init__(self, encryption: Optional[CredentialsEncryption] = None):
        self._lock = threading.RLock()
        self._encryption = encryption
        self._connectors: Dict[Tuple[Optional[str], str], Dict[str, Any]] = {}
        self._flows: Dict[Tuple[Optional[str], str], Flow] = {}
        self._last_results: Dict[str, Any] = {}

    def _seal(self, auth_config: Dict[str, Any]) -> Dict[str, Any]:
        if self._encryption is None:
            return copy.deepcopy(auth_config)
        return self._encryption.encrypt(auth_config)

    def _unseal(self, stored: Dict[str, Any]) -> Dict[str, Any]:
        if self._encryption is None:
            return copy.deepcopy(stored)
        return self._encryption.decrypt(stored)

    # Connectors

    def save_connector(self, connector: Connector) -> Connector:
        record = connector.to_dict()
        record['authConfig'] = self._seal(connector.auth_config)
        with self._lock:
            self._connectors[(connector.owner_id, connector.id)] = record
        logger.debug(f"Saved connector {connector.id}")
        return connector

    def _find(self, owner_id: Optional[str], connector_id: str) -> Optional[Tuple[Optional[str], str]]:
        key = (owner_id, connector_id)
        if key in self._connectors:
            return key
        if owner_id is None:
            return next((k for k in self._connectors if k[1] == connector_id), None)
        return None

    def get_connector(self, owner_id: Optional[str], connector_id: str) -> Optional[Connector]:
        with self._lock:
            key = self._find(owner_id, connector_id)
            if key is None:
                return None
            record = dict(self._connectors[key])
            record['authConfig'] = self._unseal(record['authConfig'])
        return Connector.from_dict(record)

    def update_connector_auth(self, owner_id: Optional[str], connector_id: str, auth_config: Dict[str, Any]):
        with self._lock:
            key = self._find(owner_id, connector_id)
            if key is None:
                raise KeyError(f"Connector not found: {connector_id}")
            self._connectors[key]['authConfig'] = self._seal(auth_config)
        logger.debug(f"Updated auth for connector {connector_id}")

    def list_connectors(self, owner_id: Optional[str] = None) -> List[Connector]:
        with self._lock:
            keys = [k for k in self._connectors if owner_id is None or k[0] == owner_id]
        connectors = []
        for owner, connector_id in keys:
            connector = self.get_connector(owner, connector_id)
            if connector is not None:
                connectors.append(connector)
        return connectors

    # Flows

    def save_flow(self, flow: Flow) -> Flow:
        if not flow.id:
            raise ValueError("Flow must have an id to be stored")
        with self._lock:
            self._flows[(flow.owner_id, flow.id)] = flow.snapshot()
        return flow

    def get_flow(self, owner_id: Optional[str], flow_id: str) -> Optional[Flow]:
        with self._lock:
            flow = self._flows.get((owner_id, flow_id))
            return flow.snapshot() if flow is not None else None

    # Last results

    def get_last_result(self, node_id: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._last_results.get(node_id))

    def save_last_result(self, node_id: str, result: Any):
        with self._lock:
            self._last_results[node_id] = copy.deepcopy(result)
