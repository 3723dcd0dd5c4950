"""Shared fixtures for workloader tests."""

from __future__ import annotations

import io
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from rich.console import Console

from workloader.apply import ApplyDriver

LIST_METHODS = (
    "list_labels",
    "list_label_dimensions",
    "list_label_groups",
    "list_workloads",
    "list_rulesets",
    "list_services",
    "list_ip_lists",
    "list_user_groups",
    "list_virtual_services",
    "list_enforcement_boundaries",
    "list_container_clusters",
    "list_container_workload_profiles",
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def mock_client() -> MagicMock:
    """Create a mock PCE client whose collections are all empty."""
    client = MagicMock()
    for name in LIST_METHODS:
        setattr(client, name, AsyncMock(return_value=[]))
    client.create_label = AsyncMock(
        side_effect=lambda key, value, **external: {
            "href": f"/orgs/1/labels/new-{key}-{value}",
            "key": key,
            "value": value,
            **external,
        }
    )
    client.bulk_update_workloads = AsyncMock(return_value=[])
    client.bulk_create_workloads = AsyncMock(return_value=[])
    client.unpair_workloads = AsyncMock(return_value=None)
    client.create_rule = AsyncMock(return_value={"href": "/orgs/1/sec_policy/draft/rule_sets/1/sec_rules/99"})
    client.update_rule = AsyncMock(return_value={})
    client.create_service = AsyncMock(return_value={"href": "/orgs/1/sec_policy/draft/services/99"})
    client.update_service = AsyncMock(return_value={})
    client.create_enforcement_boundary = AsyncMock(
        return_value={"href": "/orgs/1/sec_policy/draft/enforcement_boundaries/99"}
    )
    client.update_enforcement_boundary = AsyncMock(return_value={})
    client.update_container_workload_profile = AsyncMock(return_value={})
    client.update_label = AsyncMock(return_value={})
    client.create_ip_list = AsyncMock(return_value={"href": "/orgs/1/sec_policy/draft/ip_lists/99"})
    client.update_ip_list = AsyncMock(return_value={})
    client.create_label_group = AsyncMock(return_value={"href": "/orgs/1/sec_policy/draft/label_groups/99"})
    client.update_label_group = AsyncMock(return_value={})
    client.provision = AsyncMock(return_value={"href": "/orgs/1/sec_policy/2"})
    return client


@pytest.fixture
def console() -> Console:
    """Console that records output instead of printing it."""
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def make_driver(console: Console) -> Callable[..., ApplyDriver]:
    """Factory for ApplyDriver instances that answer "no" unless told otherwise."""

    def factory(**kwargs: Any) -> ApplyDriver:
        kwargs.setdefault("input_fn", lambda prompt: "no")
        return ApplyDriver(console=console, **kwargs)

    return factory
