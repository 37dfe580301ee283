"""
Tests for the in-memory action catalog and host directory.
"""
import json
from pathlib import Path

import pytest

from fleet_remediate.exceptions import ConfigurationError
from fleet_remediate.models import AutoTier
from fleet_remediate.remediation.catalog import InMemoryActionCatalog, InMemoryHostDirectory

from conftest import make_action, make_host


def test_catalog_lookup() -> None:
    """Actions are looked up by id."""
    catalog = InMemoryActionCatalog([make_action("a1")])
    assert catalog.get("a1").id == "a1"
    assert catalog.get("missing") is None
    catalog.add(make_action("a2"))
    assert [a.id for a in catalog.list_actions()] == ["a1", "a2"]


def test_catalog_from_json_list(tmp_path: Path) -> None:
    """A JSON list of camelCase actions loads."""
    path = tmp_path / "actions.json"
    path.write_text(json.dumps([
        {"id": "restart-sshd", "commands": ["systemctl restart sshd"], "autoTier": "guarded_auto"},
    ]))
    catalog = InMemoryActionCatalog.from_file(path)
    assert catalog.get("restart-sshd").auto_tier == AutoTier.GUARDED_AUTO


def test_catalog_from_yaml_mapping(tmp_path: Path) -> None:
    """A YAML mapping with an actions list loads."""
    path = tmp_path / "actions.yaml"
    path.write_text(
        "actions:\n"
        "  - id: rotate-keys\n"
        "    commands:\n"
        "      - rotate --all\n"
        "    risk: high\n"
    )
    catalog = InMemoryActionCatalog.from_file(path)
    assert catalog.get("rotate-keys").commands == ["rotate --all"]


def test_catalog_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="not found"):
        InMemoryActionCatalog.from_file(tmp_path / "nope.json")


def test_catalog_invalid_json(tmp_path: Path) -> None:
    path = tmp_path / "actions.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError, match="Failed to parse"):
        InMemoryActionCatalog.from_file(path)


def test_catalog_invalid_entry(tmp_path: Path) -> None:
    """Entries missing required fields are configuration errors."""
    path = tmp_path / "actions.json"
    path.write_text(json.dumps([{"id": "no-commands"}]))
    with pytest.raises(ConfigurationError, match="Invalid action"):
        InMemoryActionCatalog.from_file(path)


def test_catalog_wrong_shape(tmp_path: Path) -> None:
    path = tmp_path / "actions.json"
    path.write_text(json.dumps({"actions": "restart-sshd"}))
    with pytest.raises(ConfigurationError, match="expected a list"):
        InMemoryActionCatalog.from_file(path)


def test_host_directory(tmp_path: Path) -> None:
    """Hosts load from a hosts mapping and keep file order."""
    path = tmp_path / "hosts.json"
    path.write_text(json.dumps({"hosts": [
        {"id": "web-02", "group": "Web"},
        {"id": "web-01", "group": "web", "enabled": False},
    ]}))
    directory = InMemoryHostDirectory.from_file(path)
    assert [h.id for h in directory.list_hosts()] == ["web-02", "web-01"]
    assert directory.get_host("web-02").group == "web"
    assert directory.get_host("web-01").enabled is False
    directory.add(make_host("db-01"))
    assert directory.get_host("db-01") is not None
