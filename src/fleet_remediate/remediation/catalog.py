"""
Read-only collaborators: the action catalog and the host directory.

Both are abstract so that the surrounding system can back them with its own
data source. The in-memory implementations load from JSON or YAML files and
are what the CLI and the tests use.
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from ..models import FleetHost, RemediationAction

logger = logging.getLogger(__name__)


class ActionCatalog(ABC):
    """Lookup of remediation actions by id."""

    @abstractmethod
    def get(self, action_id: str) -> Optional[RemediationAction]:
        pass

    @abstractmethod
    def list_actions(self) -> List[RemediationAction]:
        pass


class HostDirectory(ABC):
    """Lookup of fleet hosts."""

    @abstractmethod
    def get_host(self, host_id: str) -> Optional[FleetHost]:
        pass

    @abstractmethod
    def list_hosts(self) -> List[FleetHost]:
        pass


def _load_document(path: Union[str, Path]) -> Any:
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"File not found: {file_path}")
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            if file_path.suffix.lower() in ('.yaml', '.yml'):
                return yaml.safe_load(f)
            return json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to parse {file_path}: {e}") from e


def _entries(document: Any, key: str, path: Union[str, Path]) -> List[Any]:
    if isinstance(document, dict):
        document = document.get(key, [])
    if not isinstance(document, list):
        raise ConfigurationError(f"{path}: expected a list of {key}")
    return document


class InMemoryActionCatalog(ActionCatalog):
    """
    Action catalog held in a dict.

    Example:
        >>> catalog = InMemoryActionCatalog.from_file("actions.yaml")
        >>> catalog.get("restart-sshd")
    """

    def __init__(self, actions: Iterable[RemediationAction] = ()):
        self._actions: Dict[str, RemediationAction] = {}
        for action in actions:
            self._actions[action.id] = action

    def add(self, action: RemediationAction) -> None:
        self._actions[action.id] = action

    def get(self, action_id: str) -> Optional[RemediationAction]:
        return self._actions.get(action_id)

    def list_actions(self) -> List[RemediationAction]:
        return list(self._actions.values())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'InMemoryActionCatalog':
        """
        Load actions from a JSON or YAML file.

        The file holds either a list of actions or a mapping with an
        ``actions`` list. Keys may be camelCase or snake_case.

        Raises:
            ConfigurationError: File missing, unparseable or invalid
        """
        entries = _entries(_load_document(path), "actions", path)
        try:
            actions = [RemediationAction.model_validate(entry) for entry in entries]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid action in {path}: {e}") from e
        logger.info(f"Loaded {len(actions)} actions from {path}")
        return cls(actions)


class InMemoryHostDirectory(HostDirectory):
    """Host directory held in a dict, preserving insertion order."""

    def __init__(self, hosts: Iterable[FleetHost] = ()):
        self._hosts: Dict[str, FleetHost] = {}
        for host in hosts:
            self._hosts[host.id] = host

    def add(self, host: FleetHost) -> None:
        self._hosts[host.id] = host

    def get_host(self, host_id: str) -> Optional[FleetHost]:
        return self._hosts.get(host_id)

    def list_hosts(self) -> List[FleetHost]:
        return list(self._hosts.values())

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'InMemoryHostDirectory':
        """Load hosts from a JSON or YAML file (a list or a ``hosts`` mapping)."""
        entries = _entries(_load_document(path), "hosts", path)
        try:
            hosts = [FleetHost.model_validate(entry) for entry in entries]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid host in {path}: {e}") from e
        logger.info(f"Loaded {len(hosts)} hosts from {path}")
        return cls(hosts)
