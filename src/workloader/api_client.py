"""
PCE REST API client.

Async HTTP client for the PCE ``/api/v2`` REST API. Uses httpx with HTTP
basic authentication (API key username and secret). Collections larger than
the synchronous limit are fetched through the PCE async job flow.
"""

import asyncio
import logging
from typing import Any

import httpx

from workloader.config import PCESettings

logger = logging.getLogger(__name__)

# Largest collection the PCE returns on a synchronous GET
SYNC_COLLECTION_LIMIT = 500

# Bulk workload operations accept at most this many items per call
BULK_CHUNK_SIZE = 1000


class APIError(Exception):
    """Exception raised for API errors."""

    def __init__(self, status_code: int, message: str, response_body: Any = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"API Error {status_code}: {message}")


class BulkOperationError(APIError):
    """Raised when one or more items of a bulk call report an error."""

    def __init__(self, operation: str, failures: list[dict[str, Any]]):
        self.operation = operation
        self.failures = failures
        details = "; ".join(
            f"{item.get('href', '<new>')}: {item.get('errors') or item.get('status')}"
            for item in failures
        )
        super().__init__(0, f"{operation} failed for {len(failures)} item(s): {details}", failures)


def chunked(items: list[Any], size: int = BULK_CHUNK_SIZE) -> list[list[Any]]:
    """Split a list into consecutive chunks of at most ``size`` items."""
    return [items[i : i + size] for i in range(0, len(items), size)]


class PCEClient:
    """
    Async client for the PCE REST API.

    Provides methods for the object types the import and export commands use:
    - Labels and label dimensions
    - Workloads (including bulk create/update and unpair)
    - Draft rulesets, rules, services, IP lists, label groups
    - User groups, virtual services, enforcement boundaries
    - Container clusters and container workload profiles
    - Provisioning
    """

    def __init__(
        self,
        base_url: str,
        org: int,
        api_user: str,
        api_key: str,
        verify: bool = True,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the PCE API client.

        Args:
            base_url: Base URL of the API (e.g., "https://pce.example.com:8443/api/v2")
            org: PCE organization ID
            api_user: API key username
            api_key: API key secret
            verify: Verify the PCE TLS certificate (default: True)
            timeout: Request timeout in seconds (default: 60.0)
            poll_interval: Seconds between async job status polls (default: 1.0)
            transport: Optional httpx transport, used for testing
        """
        self.base_url = base_url.rstrip("/")
        self.org = org
        self.api_user = api_user
        self.api_key = api_key
        self.verify = verify
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: PCESettings, **kwargs: Any) -> "PCEClient":
        """Build a client from stored PCE settings."""
        return cls(
            base_url=settings.base_url,
            org=settings.org,
            api_user=settings.api_user,
            api_key=settings.api_key,
            verify=not settings.disable_tls_verification,
            **kwargs,
        )

    async def __aenter__(self) -> "PCEClient":
        """Enter async context manager."""
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=httpx.BasicAuth(self.api_user, self.api_key),
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                },
                timeout=httpx.Timeout(self.timeout),
                verify=self.verify,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def org_path(self) -> str:
        return f"/orgs/{self.org}"

    async def _send(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Send a request and raise on transport or HTTP errors.

        Raises:
            APIError: If the request fails or returns a 4xx/5xx status
        """
        client = await self._ensure_client()

        logger.debug("%s %s", method, path)
        try:
            response = await client.request(
                method=method,
                url=path,
                json=json,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise APIError(0, f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise APIError(0, f"Request failed: {e}") from e

        if response.status_code >= 400:
            try:
                error_body = response.json()
            except ValueError:
                error_body = response.text

            raise APIError(
                status_code=response.status_code,
                message=_error_message(error_body),
                response_body=error_body,
            )

        return response

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """
        Make an HTTP request to the API.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: API endpoint path, relative to /api/v2
            json: Request body as JSON
            params: Query parameters

        Returns:
            Response data (dict, list, or empty dict for 204)

        Raises:
            APIError: If the request fails
        """
        response = await self._send(method, path, json=json, params=params)

        # Handle 204 No Content
        if response.status_code == 204 or not response.content:
            return {}

        return response.json()

    async def get_collection(
        self, path: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """
        GET a collection, switching to an async job when it is too large.

        The PCE reports the full collection size in ``X-Total-Count``. When
        that exceeds the synchronous limit the request is repeated with
        ``Prefer: respond-async`` and the job is polled until its result is
        ready.

        Args:
            path: Collection path, relative to /api/v2
            params: Query filters

        Returns:
            All objects in the collection
        """
        response = await self._send("GET", path, params=params)
        data = response.json() if response.content else []

        total = response.headers.get("X-Total-Count")
        if total is None or int(total) <= len(data):
            return data

        logger.debug("%s has %s objects, fetching with async job", path, total)
        response = await self._send(
            "GET", path, params=params, headers={"Prefer": "respond-async"}
        )
        job_href = response.headers.get("Location")
        if not job_href:
            raise APIError(response.status_code, f"Async request for {path} returned no job location")

        while True:
            job = await self._request("GET", job_href)
            status = job.get("status")
            if status == "done":
                break
            if status == "failed":
                raise APIError(0, f"Async job {job_href} failed", job)
            await asyncio.sleep(self.poll_interval)

        result_href = (job.get("result") or {}).get("href")
        if not result_href:
            raise APIError(0, f"Async job {job_href} completed without a result", job)
        return await self._request("GET", result_href)

    # =========================================================================
    # Labels
    # =========================================================================

    async def list_labels(self) -> list[dict[str, Any]]:
        """List all labels."""
        return await self.get_collection(f"{self.org_path}/labels")

    async def list_label_dimensions(self) -> list[dict[str, Any]]:
        """List label dimensions (label types)."""
        return await self.get_collection(f"{self.org_path}/label_dimensions")

    async def create_label(
        self,
        key: str,
        value: str,
        external_data_set: str = "",
        external_data_reference: str = "",
    ) -> dict[str, Any]:
        """
        Create a label.

        Args:
            key: Label dimension key (e.g., "role")
            value: Label value
            external_data_set: Optional external data set
            external_data_reference: Optional external data reference

        Returns:
            Created label object
        """
        body: dict[str, Any] = {"key": key, "value": value}
        if external_data_set and external_data_reference:
            body["external_data_set"] = external_data_set
            body["external_data_reference"] = external_data_reference
        return await self._request("POST", f"{self.org_path}/labels", json=body)

    async def update_label(self, href: str, label: dict[str, Any]) -> dict[str, Any]:
        """Update a label's value or external data."""
        return await self._request("PUT", href, json=label)

    async def list_label_groups(self) -> list[dict[str, Any]]:
        """List draft label groups."""
        return await self.get_collection(f"{self.org_path}/sec_policy/draft/label_groups")

    async def create_label_group(self, group: dict[str, Any]) -> dict[str, Any]:
        """Create a draft label group."""
        return await self._request(
            "POST", f"{self.org_path}/sec_policy/draft/label_groups", json=group
        )

    async def update_label_group(self, href: str, group: dict[str, Any]) -> dict[str, Any]:
        """Update a draft label group."""
        return await self._request("PUT", href, json=group)

    # =========================================================================
    # Workloads
    # =========================================================================

    async def list_workloads(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """
        List workloads.

        Args:
            params: Optional query filters (e.g., {"managed": "true"})

        Returns:
            List of workload objects
        """
        return await self.get_collection(f"{self.org_path}/workloads", params=params)

    async def _bulk(self, operation: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for i, chunk in enumerate(chunked(items), start=1):
            logger.info("%s: sending chunk %d with %d workloads", operation, i, len(chunk))
            response = await self._request(
                "PUT", f"{self.org_path}/workloads/{operation}", json=chunk
            )
            chunk_results = response if isinstance(response, list) else []
            failures = [item for item in chunk_results if item.get("errors")]
            if failures:
                raise BulkOperationError(operation, failures)
            results.extend(chunk_results)
        return results

    async def bulk_update_workloads(self, workloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Update workloads in chunks of 1000.

        Args:
            workloads: Workload payloads, each with an href

        Returns:
            Per-workload results

        Raises:
            BulkOperationError: If any workload reports an error
        """
        return await self._bulk("bulk_update", workloads)

    async def bulk_create_workloads(self, workloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Create unmanaged workloads in chunks of 1000.

        Raises:
            BulkOperationError: If any workload reports an error
        """
        return await self._bulk("bulk_create", workloads)

    async def unpair_workloads(self, hrefs: list[str], restore: str) -> None:
        """
        Unpair workloads in chunks of 1000.

        Args:
            hrefs: Workload hrefs to unpair
            restore: Firewall restore mode ("saved", "default" or "disable")
        """
        for i, chunk in enumerate(chunked(hrefs), start=1):
            logger.info("unpair: sending chunk %d with %d workloads", i, len(chunk))
            await self._request(
                "PUT",
                f"{self.org_path}/workloads/unpair",
                json={
                    "workloads": [{"href": href} for href in chunk],
                    "ip_table_restore": restore,
                },
            )

    # =========================================================================
    # Rulesets and Rules
    # =========================================================================

    async def list_rulesets(self) -> list[dict[str, Any]]:
        """List draft rulesets with their rules."""
        return await self.get_collection(f"{self.org_path}/sec_policy/draft/rule_sets")

    async def create_rule(self, ruleset_href: str, rule: dict[str, Any]) -> dict[str, Any]:
        """
        Create a rule in a draft ruleset.

        Args:
            ruleset_href: Href of the parent ruleset
            rule: Rule payload

        Returns:
            Created rule object
        """
        return await self._request("POST", f"{ruleset_href}/sec_rules", json=rule)

    async def update_rule(self, rule_href: str, rule: dict[str, Any]) -> dict[str, Any]:
        """Update a draft rule in place."""
        return await self._request("PUT", rule_href, json=rule)

    # =========================================================================
    # Services
    # =========================================================================

    async def list_services(self) -> list[dict[str, Any]]:
        """List draft services."""
        return await self.get_collection(f"{self.org_path}/sec_policy/draft/services")

    async def create_service(self, service: dict[str, Any]) -> dict[str, Any]:
        """Create a draft service."""
        return await self._request(
            "POST", f"{self.org_path}/sec_policy/draft/services", json=service
        )

    async def update_service(self, href: str, service: dict[str, Any]) -> dict[str, Any]:
        """Update a draft service."""
        return await self._request("PUT", href, json=service)

    # =========================================================================
    # IP Lists, User Groups, Virtual Services
    # =========================================================================

    async def list_ip_lists(self) -> list[dict[str, Any]]:
        """List draft IP lists."""
        return await self.get_collection(f"{self.org_path}/sec_policy/draft/ip_lists")

    async def create_ip_list(self, ip_list: dict[str, Any]) -> dict[str, Any]:
        """Create a draft IP list."""
        return await self._request(
            "POST", f"{self.org_path}/sec_policy/draft/ip_lists", json=ip_list
        )

    async def update_ip_list(self, href: str, ip_list: dict[str, Any]) -> dict[str, Any]:
        """Update a draft IP list."""
        return await self._request("PUT", href, json=ip_list)

    async def list_user_groups(self) -> list[dict[str, Any]]:
        """List user groups (security principals)."""
        return await self.get_collection(f"{self.org_path}/security_principals")

    async def list_virtual_services(self) -> list[dict[str, Any]]:
        """List draft virtual services."""
        return await self.get_collection(f"{self.org_path}/sec_policy/draft/virtual_services")

    # =========================================================================
    # Enforcement Boundaries
    # =========================================================================

    async def list_enforcement_boundaries(self) -> list[dict[str, Any]]:
        """List draft enforcement boundaries."""
        return await self.get_collection(
            f"{self.org_path}/sec_policy/draft/enforcement_boundaries"
        )

    async def create_enforcement_boundary(self, boundary: dict[str, Any]) -> dict[str, Any]:
        """Create a draft enforcement boundary."""
        return await self._request(
            "POST", f"{self.org_path}/sec_policy/draft/enforcement_boundaries", json=boundary
        )

    async def update_enforcement_boundary(
        self, href: str, boundary: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a draft enforcement boundary."""
        return await self._request("PUT", href, json=boundary)

    # =========================================================================
    # Container Workload Profiles
    # =========================================================================

    async def list_container_clusters(self) -> list[dict[str, Any]]:
        """List container clusters."""
        return await self.get_collection(f"{self.org_path}/container_clusters")

    async def list_container_workload_profiles(self, cluster_href: str) -> list[dict[str, Any]]:
        """List container workload profiles of one cluster."""
        return await self.get_collection(f"{cluster_href}/container_workload_profiles")

    async def update_container_workload_profile(
        self, href: str, profile: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a container workload profile."""
        return await self._request("PUT", href, json=profile)

    # =========================================================================
    # Provisioning
    # =========================================================================

    async def provision(self, change_subset: dict[str, list[str]], comment: str = "") -> dict[str, Any]:
        """
        Provision draft policy objects.

        Args:
            change_subset: Object type to hrefs, e.g. {"rule_sets": ["/orgs/1/..."]}
            comment: Provision comment

        Returns:
            Policy version object
        """
        payload = {
            "update_description": comment,
            "change_subset": {
                kind: [{"href": href} for href in hrefs]
                for kind, hrefs in change_subset.items()
                if hrefs
            },
        }
        return await self._request("POST", f"{self.org_path}/sec_policy", json=payload)


def _error_message(body: Any) -> str:
    """Extract a readable message from a PCE error body."""
    if isinstance(body, list) and body and isinstance(body[0], dict):
        # PCE errors are a list of {"token": ..., "message": ...}
        return "; ".join(str(e.get("message") or e.get("token")) for e in body)
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)
