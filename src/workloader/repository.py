"""In-memory snapshot of PCE objects.

The repository loads the object collections a command needs and indexes them
by href and by their natural keys (hostname, name, external data, label
key/value) so CSV rows can be matched to remote objects.
"""

from __future__ import annotations

import logging
from typing import Any

from workloader.api_client import PCEClient

logger = logging.getLogger(__name__)

DEFAULT_LABEL_KEYS: tuple[str, ...] = ("role", "app", "env", "loc")

VALID_SELECTORS: frozenset[str] = frozenset(
    [
        "labels",
        "label_dimensions",
        "workloads",
        "rulesets",
        "services",
        "ip_lists",
        "label_groups",
        "user_groups",
        "virtual_services",
        "enforcement_boundaries",
        "container_workload_profiles",
    ]
)

# Natural keys a workload can be matched on
WORKLOAD_MATCH_FIELDS: frozenset[str] = frozenset(["href", "hostname", "name", "external_data"])

Entity = dict[str, Any]


class RepositoryError(Exception):
    """Base exception for repository errors."""

    pass


class InvalidSelectorError(RepositoryError):
    """Raised when an unknown collection is requested."""

    def __init__(self, selector: str) -> None:
        self.selector = selector
        super().__init__(
            f"Invalid selector: '{selector}'. Valid selectors: {sorted(VALID_SELECTORS)}"
        )


def external_data_key(data_set: str | None, reference: str | None) -> str:
    """Composite key for a workload's external data set and reference."""
    return f"{data_set or ''}|{reference or ''}"


class EntityRepository:
    """Indexed snapshot of PCE objects for one command run.

    Example:
        >>> repo = EntityRepository()
        >>> repo.add_labels([{"href": "/orgs/1/labels/1", "key": "role", "value": "web"}])
        >>> repo.label_by_key_value("role", "web")["href"]
        '/orgs/1/labels/1'
    """

    def __init__(self) -> None:
        self.loaded: set[str] = set()

        self.labels: dict[str, Entity] = {}
        self._labels_by_key_value: dict[tuple[str, str], Entity] = {}
        self.label_dimensions: list[Entity] = []

        self.workloads: dict[str, Entity] = {}
        self._workloads_by: dict[str, dict[str, Entity]] = {
            "hostname": {},
            "name": {},
            "external_data": {},
        }

        self.rulesets: dict[str, Entity] = {}
        self._rulesets_by_name: dict[str, Entity] = {}
        self.rules: dict[str, Entity] = {}
        self.rule_ruleset: dict[str, str] = {}

        self.services: dict[str, Entity] = {}
        self._services_by_name: dict[str, Entity] = {}
        self.ip_lists: dict[str, Entity] = {}
        self._ip_lists_by_name: dict[str, Entity] = {}
        self.label_groups: dict[str, Entity] = {}
        self._label_groups_by_name: dict[str, Entity] = {}
        self._label_groups_by_key_name: dict[tuple[str, str], Entity] = {}
        self.user_groups: dict[str, Entity] = {}
        self._user_groups_by_name: dict[str, Entity] = {}
        self.virtual_services: dict[str, Entity] = {}
        self._virtual_services_by_name: dict[str, Entity] = {}
        self.enforcement_boundaries: dict[str, Entity] = {}

        self.container_clusters: dict[str, Entity] = {}
        self.container_workload_profiles: dict[str, Entity] = {}
        self.cwp_cluster: dict[str, str] = {}

    async def load(self, client: PCEClient, *selectors: str) -> None:
        """Load the requested collections from the PCE.

        Args:
            client: Connected PCE client.
            *selectors: Collection names from VALID_SELECTORS.

        Raises:
            InvalidSelectorError: If a selector is unknown. Raised before any
                API call is made.
            APIError: If any load fails.
        """
        for selector in selectors:
            if selector not in VALID_SELECTORS:
                raise InvalidSelectorError(selector)

        for selector in selectors:
            if selector == "labels":
                self.add_labels(await client.list_labels())
            elif selector == "label_dimensions":
                self.label_dimensions = await client.list_label_dimensions()
            elif selector == "workloads":
                self.add_workloads(await client.list_workloads())
            elif selector == "rulesets":
                self.add_rulesets(await client.list_rulesets())
            elif selector == "services":
                self.add_services(await client.list_services())
            elif selector == "ip_lists":
                self.add_ip_lists(await client.list_ip_lists())
            elif selector == "label_groups":
                self.add_label_groups(await client.list_label_groups())
            elif selector == "user_groups":
                self.add_user_groups(await client.list_user_groups())
            elif selector == "virtual_services":
                self.add_virtual_services(await client.list_virtual_services())
            elif selector == "enforcement_boundaries":
                for boundary in await client.list_enforcement_boundaries():
                    self.enforcement_boundaries[boundary["href"]] = boundary
            elif selector == "container_workload_profiles":
                for cluster in await client.list_container_clusters():
                    self.container_clusters[cluster["href"]] = cluster
                    profiles = await client.list_container_workload_profiles(cluster["href"])
                    self.add_container_workload_profiles(cluster, profiles)

            self.loaded.add(selector)
            logger.info("loaded %s from the pce", selector)

    # =========================================================================
    # Indexing
    # =========================================================================

    def _index_by_name(
        self,
        entities: list[Entity],
        by_href: dict[str, Entity],
        by_name: dict[str, Entity],
        kind: str,
    ) -> None:
        for entity in entities:
            by_href[entity["href"]] = entity
            name = entity.get("name")
            if not name:
                continue
            if name in by_name:
                logger.warning(
                    "duplicate %s name '%s' found: %s and %s - using %s",
                    kind,
                    name,
                    by_name[name]["href"],
                    entity["href"],
                    by_name[name]["href"],
                )
                continue
            by_name[name] = entity

    def add_labels(self, labels: list[Entity]) -> None:
        for label in labels:
            self.labels[label["href"]] = label
            self._labels_by_key_value[(label["key"], label["value"])] = label

    def add_workloads(self, workloads: list[Entity]) -> None:
        for workload in workloads:
            self.workloads[workload["href"]] = workload
            keys = {
                "hostname": workload.get("hostname"),
                "name": workload.get("name"),
                "external_data": external_data_key(
                    workload.get("external_data_set"), workload.get("external_data_reference")
                )
                if workload.get("external_data_set") or workload.get("external_data_reference")
                else None,
            }
            for field, value in keys.items():
                if not value:
                    continue
                index = self._workloads_by[field]
                if value in index:
                    logger.warning(
                        "duplicate workload %s '%s' found: %s and %s - using %s",
                        field,
                        value,
                        index[value]["href"],
                        workload["href"],
                        index[value]["href"],
                    )
                    continue
                index[value] = workload

    def add_rulesets(self, rulesets: list[Entity]) -> None:
        self._index_by_name(rulesets, self.rulesets, self._rulesets_by_name, "ruleset")
        for ruleset in rulesets:
            for rule in ruleset.get("rules") or []:
                self.rules[rule["href"]] = rule
                self.rule_ruleset[rule["href"]] = ruleset["href"]

    def add_services(self, services: list[Entity]) -> None:
        self._index_by_name(services, self.services, self._services_by_name, "service")

    def add_ip_lists(self, ip_lists: list[Entity]) -> None:
        self._index_by_name(ip_lists, self.ip_lists, self._ip_lists_by_name, "ip list")

    def add_label_groups(self, label_groups: list[Entity]) -> None:
        self._index_by_name(label_groups, self.label_groups, self._label_groups_by_name, "label group")
        for group in label_groups:
            if group.get("name"):
                self._label_groups_by_key_name.setdefault((group.get("key", ""), group["name"]), group)

    def add_user_groups(self, user_groups: list[Entity]) -> None:
        self._index_by_name(user_groups, self.user_groups, self._user_groups_by_name, "user group")

    def add_virtual_services(self, virtual_services: list[Entity]) -> None:
        self._index_by_name(
            virtual_services, self.virtual_services, self._virtual_services_by_name, "virtual service"
        )

    def add_container_workload_profiles(self, cluster: Entity, profiles: list[Entity]) -> None:
        for profile in profiles:
            self.container_workload_profiles[profile["href"]] = profile
            self.cwp_cluster[profile["href"]] = cluster.get("name", "")

    # =========================================================================
    # Labels
    # =========================================================================

    def label(self, href: str) -> Entity | None:
        return self.labels.get(href)

    def label_by_key_value(self, key: str, value: str) -> Entity | None:
        return self._labels_by_key_value.get((key, value))

    def label_keys(self) -> list[str]:
        """Label dimension keys, starting with the four default keys."""
        keys = list(DEFAULT_LABEL_KEYS)
        for dimension in self.label_dimensions:
            key = dimension.get("key")
            if key and key not in keys:
                keys.append(key)
        return keys

    def add_placeholder_label(self, key: str, value: str, href: str) -> Entity:
        """Register a label that does not exist on the PCE yet."""
        label = {"href": href, "key": key, "value": value}
        self.add_labels([label])
        return label

    # =========================================================================
    # Lookups
    # =========================================================================

    def find_workload(self, match_field: str, value: str) -> Entity | None:
        """Find a workload by href, hostname, name or external_data key.

        Raises:
            RepositoryError: If match_field is not a workload match field.
        """
        if match_field not in WORKLOAD_MATCH_FIELDS:
            raise RepositoryError(
                f"Invalid workload match field: '{match_field}'. "
                f"Valid fields: {sorted(WORKLOAD_MATCH_FIELDS)}"
            )
        if match_field == "href":
            return self.workloads.get(value)
        return self._workloads_by[match_field].get(value)

    def workload_by_hostname_or_name(self, value: str) -> Entity | None:
        return self._workloads_by["hostname"].get(value) or self._workloads_by["name"].get(value)

    def ruleset_by_name(self, name: str) -> Entity | None:
        return self._rulesets_by_name.get(name)

    def service_by_name(self, name: str) -> Entity | None:
        return self._services_by_name.get(name)

    def ip_list_by_name(self, name: str) -> Entity | None:
        return self._ip_lists_by_name.get(name)

    def label_group_by_name(self, name: str) -> Entity | None:
        return self._label_groups_by_name.get(name)

    def label_group_by_key_name(self, key: str, name: str) -> Entity | None:
        return self._label_groups_by_key_name.get((key, name))

    def expand_label_group(self, href: str) -> list[str]:
        """Hrefs of every label in a label group, following nested groups.

        Each label appears once, in first-seen order. Cycles are ignored.
        """
        labels: list[str] = []
        seen_groups: set[str] = set()

        def walk(group_href: str) -> None:
            if group_href in seen_groups:
                return
            seen_groups.add(group_href)
            group = self.label_groups.get(group_href) or {}
            for label in group.get("labels") or []:
                if label["href"] not in labels:
                    labels.append(label["href"])
            for sub_group in group.get("sub_groups") or []:
                walk(sub_group["href"])

        walk(href)
        return labels

    def user_group_by_name(self, name: str) -> Entity | None:
        return self._user_groups_by_name.get(name)

    def virtual_service_by_name(self, name: str) -> Entity | None:
        return self._virtual_services_by_name.get(name)

    def __repr__(self) -> str:
        return f"EntityRepository(loaded={sorted(self.loaded)})"
