"""Unit tests for the PCE API client."""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from workloader.api_client import APIError, BulkOperationError, PCEClient, chunked
from workloader.config import PCESettings

BASE_URL = "https://pce.test:8443/api/v2"


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> PCEClient:
    """Create a client backed by a mock transport."""
    return PCEClient(
        base_url=BASE_URL,
        org=1,
        api_user="api_user",
        api_key="secret",
        poll_interval=0,
        transport=httpx.MockTransport(handler),
    )


class TestChunked:
    """Test chunked."""

    def test_chunks(self) -> None:
        """Test items are split into chunks of at most size."""
        assert chunked(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
        assert chunked([], 2) == []


class TestFromSettings:
    """Test building a client from settings."""

    def test_from_settings(self) -> None:
        """Test base URL, org and TLS verification come from settings."""
        settings = PCESettings(fqdn="pce.test", org=2, disable_tls_verification=True)

        client = PCEClient.from_settings(settings)

        assert client.base_url == BASE_URL
        assert client.org_path == "/orgs/2"
        assert client.verify is False


class TestRequests:
    """Test request handling and error mapping."""

    @pytest.mark.asyncio
    async def test_basic_auth_and_path(self) -> None:
        """Test requests carry basic auth and hit the org path."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=[{"href": "/orgs/1/labels/1", "key": "role", "value": "web"}])

        async with make_client(handler) as client:
            labels = await client.list_labels()

        assert labels[0]["value"] == "web"
        assert seen[0].url.path == "/api/v2/orgs/1/labels"
        assert seen[0].headers["Authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_error_status_raises_api_error(self) -> None:
        """Test PCE error bodies become APIError messages."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(406, json=[{"token": "invalid_name", "message": "Name already in use"}])

        async with make_client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                await client.create_service({"name": "dup"})

        assert exc_info.value.status_code == 406
        assert exc_info.value.message == "Name already in use"

    @pytest.mark.asyncio
    async def test_transport_error_raises_api_error(self) -> None:
        """Test connection failures become APIError with status 0."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                await client.list_labels()

        assert exc_info.value.status_code == 0
        assert "connection refused" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_response_body(self) -> None:
        """Test a 204 returns an empty dict."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(204)

        async with make_client(handler) as client:
            result = await client.update_rule("/orgs/1/sec_policy/draft/rule_sets/1/sec_rules/2", {})

        assert result == {}


class TestAsyncCollection:
    """Test the async job flow for large collections."""

    @pytest.mark.asyncio
    async def test_small_collection_is_synchronous(self) -> None:
        """Test no async job when X-Total-Count matches the data."""
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(200, json=[{"href": "a"}], headers={"X-Total-Count": "1"})

        async with make_client(handler) as client:
            result = await client.list_workloads()

        assert result == [{"href": "a"}]
        assert calls == ["/api/v2/orgs/1/workloads"]

    @pytest.mark.asyncio
    async def test_large_collection_uses_async_job(self) -> None:
        """Test the request is repeated async and the job is polled."""
        polls = {"count": 0}
        full = [{"href": f"/orgs/1/workloads/{i}"} for i in range(3)]

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/api/v2/orgs/1/workloads":
                if request.headers.get("Prefer") == "respond-async":
                    return httpx.Response(202, headers={"Location": "/orgs/1/jobs/abc"})
                return httpx.Response(200, json=full[:2], headers={"X-Total-Count": "3"})
            if path == "/api/v2/orgs/1/jobs/abc":
                polls["count"] += 1
                if polls["count"] < 2:
                    return httpx.Response(200, json={"status": "running"})
                return httpx.Response(
                    200, json={"status": "done", "result": {"href": "/orgs/1/datafiles/xyz"}}
                )
            if path == "/api/v2/orgs/1/datafiles/xyz":
                return httpx.Response(200, json=full)
            return httpx.Response(404)

        async with make_client(handler) as client:
            result = await client.list_workloads()

        assert result == full
        assert polls["count"] == 2

    @pytest.mark.asyncio
    async def test_failed_job_raises(self) -> None:
        """Test a failed async job raises APIError."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/jobs/abc"):
                return httpx.Response(200, json={"status": "failed"})
            if request.headers.get("Prefer") == "respond-async":
                return httpx.Response(202, headers={"Location": "/orgs/1/jobs/abc"})
            return httpx.Response(200, json=[], headers={"X-Total-Count": "600"})

        async with make_client(handler) as client:
            with pytest.raises(APIError) as exc_info:
                await client.list_workloads()

        assert "failed" in str(exc_info.value)


class TestBulkOperations:
    """Test bulk workload calls."""

    @pytest.mark.asyncio
    async def test_bulk_update_is_chunked(self) -> None:
        """Test 1500 workloads are sent as two PUTs."""
        sizes: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "PUT"
            assert request.url.path == "/api/v2/orgs/1/workloads/bulk_update"
            body = json.loads(request.content)
            sizes.append(len(body))
            return httpx.Response(200, json=[{"href": w["href"], "status": "updated"} for w in body])

        workloads = [{"href": f"/orgs/1/workloads/{i}"} for i in range(1500)]
        async with make_client(handler) as client:
            results = await client.bulk_update_workloads(workloads)

        assert sizes == [1000, 500]
        assert len(results) == 1500

    @pytest.mark.asyncio
    async def test_bulk_item_errors_raise(self) -> None:
        """Test per-item errors raise BulkOperationError."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[
                    {"href": "/orgs/1/workloads/1", "status": "updated"},
                    {"href": "/orgs/1/workloads/2", "errors": [{"token": "invalid_label"}]},
                ],
            )

        async with make_client(handler) as client:
            with pytest.raises(BulkOperationError) as exc_info:
                await client.bulk_create_workloads([{"hostname": "a"}, {"hostname": "b"}])

        assert exc_info.value.operation == "bulk_create"
        assert len(exc_info.value.failures) == 1
        assert "/orgs/1/workloads/2" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unpair_payload(self) -> None:
        """Test the unpair body."""
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(204)

        async with make_client(handler) as client:
            await client.unpair_workloads(["/orgs/1/workloads/1"], "saved")

        assert bodies == [{"workloads": [{"href": "/orgs/1/workloads/1"}], "ip_table_restore": "saved"}]


class TestProvision:
    """Test provisioning."""

    @pytest.mark.asyncio
    async def test_provision_payload(self) -> None:
        """Test change_subset and description are sent, empty kinds dropped."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"href": "/orgs/1/sec_policy/5"})

        async with make_client(handler) as client:
            await client.provision(
                {"rule_sets": ["/orgs/1/sec_policy/draft/rule_sets/1"], "services": []},
                "import",
            )

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v2/orgs/1/sec_policy"
        assert json.loads(requests[0].content) == {
            "update_description": "import",
            "change_subset": {"rule_sets": [{"href": "/orgs/1/sec_policy/draft/rule_sets/1"}]},
        }


class TestPolicyObjects:
    """Test label, IP list and label group writes."""

    @pytest.mark.asyncio
    async def test_create_label_external_data(self) -> None:
        """Test external data is only sent when both fields are set."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"href": "/orgs/1/labels/9"})

        async with make_client(handler) as client:
            await client.create_label("app", "crm", external_data_set="cmdb", external_data_reference="9")
            await client.create_label("app", "erp", external_data_set="cmdb")

        assert requests[0].url.path == "/api/v2/orgs/1/labels"
        assert json.loads(requests[0].content) == {
            "key": "app",
            "value": "crm",
            "external_data_set": "cmdb",
            "external_data_reference": "9",
        }
        assert json.loads(requests[1].content) == {"key": "app", "value": "erp"}

    @pytest.mark.asyncio
    async def test_ip_list_and_label_group_paths(self) -> None:
        """Test creates go to the draft collection and updates to the href."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"href": "/orgs/1/sec_policy/draft/ip_lists/9"})

        async with make_client(handler) as client:
            await client.create_ip_list({"name": "Lab", "ip_ranges": [{"from_ip": "10.1.0.0/16"}]})
            await client.update_label_group("/orgs/1/sec_policy/draft/label_groups/3", {"name": "Web"})

        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v2/orgs/1/sec_policy/draft/ip_lists"
        assert requests[1].method == "PUT"
        assert requests[1].url.path == "/api/v2/orgs/1/sec_policy/draft/label_groups/3"
        assert json.loads(requests[1].content) == {"name": "Web"}
