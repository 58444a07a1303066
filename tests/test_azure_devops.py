"""Tests for the Azure DevOps client and payload models (HTTP mocked with httpx.MockTransport)."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from app.services.azure_devops import (
    AzureDevOpsClient,
    AzureDevOpsError,
    AzureWorkItem,
    ConfigurationError,
    IdentityRef,
    escape_wiql,
)

ORG = "https://dev.azure.com/acme"


def make_client(handler, **kwargs) -> AzureDevOpsClient:
    kwargs.setdefault("batch_delay_ms", 0)
    return AzureDevOpsClient(ORG, "secret-pat", project="Portal", transport=httpx.MockTransport(handler), **kwargs)


def work_item_payload(item_id: int, **fields):
    base = {"System.Title": f"Item {item_id}", "System.State": "Active", "System.WorkItemType": "Task"}
    base.update(fields)
    return {"id": item_id, "rev": 3, "fields": base, "url": f"{ORG}/_apis/wit/workItems/{item_id}"}


class TestPayloadModels:
    def test_work_item_accessors(self):
        item = AzureWorkItem.model_validate(
            {
                "id": 10,
                "rev": 4,
                "fields": {
                    "System.Title": "Checkout",
                    "System.State": "Done",
                    "System.Tags": "api; backend ;",
                    "Microsoft.VSTS.Scheduling.RemainingWork": "2.5",
                    "Microsoft.VSTS.Common.ClosedDate": "2025-03-10T08:00:00Z",
                },
                "relations": [
                    {"rel": "System.LinkTypes.Hierarchy-Reverse", "url": f"{ORG}/_apis/wit/workItems/7"},
                ],
            }
        )

        assert item.title == "Checkout"
        assert item.remaining_work == 2.5
        assert item.completed_work is None
        assert item.tags == ["api", "backend"]
        assert item.parent_id == 7
        assert item.closed_date == datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)
        assert item.work_item_type == "Task"

    def test_identity_from_legacy_string(self):
        identity = IdentityRef.from_field("Maria Silva <maria@acme.com>")

        assert identity.display_name == "Maria Silva"
        assert identity.unique_name == "maria@acme.com"
        assert IdentityRef.from_field(None) is None

    def test_escape_wiql(self):
        assert escape_wiql("Portal\\Sprint 'A'") == "Portal\\Sprint ''A''"


class TestAzureDevOpsClient:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            AzureDevOpsClient("", "")

    @pytest.mark.asyncio
    async def test_query_wiql_sends_auth_and_api_version(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"workItems": [{"id": 3}, {"id": 1}]})

        async with make_client(handler) as client:
            ids = await client.changed_work_item_ids(datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc))

        assert ids == [3, 1]
        assert seen["url"].path == "/acme/Portal/_apis/wit/wiql"
        assert seen["url"].params["api-version"] == "7.0"
        assert seen["auth"].startswith("Basic ")
        assert "'2025-03-01'" in seen["body"]["query"]

    @pytest.mark.asyncio
    async def test_get_work_items_batches_and_skips_missing(self):
        batches = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids = [int(i) for i in request.url.params["ids"].split(",")]
            batches.append(ids)
            assert request.url.params["errorPolicy"] == "omit"
            # Azure returns null for ids it cannot resolve
            return httpx.Response(200, json={"value": [work_item_payload(i) if i != 2 else None for i in ids]})

        async with make_client(handler, fetch_batch_size=2) as client:
            items = await client.get_work_items([1, 2, 3, 1])

        assert batches == [[1, 2], [3]]
        assert [i.id for i in items] == [1, 3]

    @pytest.mark.asyncio
    async def test_get_revisions_pages(self, monkeypatch):
        monkeypatch.setattr("app.services.azure_devops.REVISIONS_PAGE_SIZE", 2)

        def handler(request: httpx.Request) -> httpx.Response:
            skip = int(request.url.params["$skip"])
            page = [{"id": 5, "rev": r, "fields": {}} for r in range(skip + 1, min(skip + 2, 3) + 1)]
            return httpx.Response(200, json={"value": page})

        async with make_client(handler) as client:
            revisions = await client.get_revisions(5)

        assert [r.rev for r in revisions] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_throttled_request_is_retried_once(self):
        calls = {"count": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["count"] += 1
            if calls["count"] == 1:
                return httpx.Response(429, headers={"Retry-After": "0"})
            return httpx.Response(200, json=work_item_payload(9))

        async with make_client(handler) as client:
            item = await client.get_work_item(9)

        assert item.id == 9
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="not found")

        async with make_client(handler) as client:
            with pytest.raises(AzureDevOpsError) as exc_info:
                await client.get_revisions(404)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_list_iterations_defaults_team_name(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(
                200,
                json={
                    "value": [
                        {
                            "id": "it-1",
                            "name": "Sprint 1",
                            "path": "Portal\\Sprint 1",
                            "attributes": {
                                "startDate": "2025-03-03T00:00:00Z",
                                "finishDate": "2025-03-14T00:00:00Z",
                                "timeFrame": "past",
                            },
                        }
                    ]
                },
            )

        async with make_client(handler) as client:
            iterations = await client.list_iterations()

        assert seen["path"] == "/acme/Portal/Portal Team/_apis/work/teamsettings/iterations"
        assert iterations[0].attributes.time_frame == "past"
        assert iterations[0].attributes.start_date == datetime(2025, 3, 3, tzinfo=timezone.utc)


class TestWikiEndpoints:
    @pytest.mark.asyncio
    async def test_list_wikis(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            return httpx.Response(200, json={"value": [{"id": "w-1", "name": "Portal.wiki", "type": "projectWiki"}]})

        async with make_client(handler) as client:
            wikis = await client.list_wikis()

        assert seen["path"] == "/acme/Portal/_apis/wiki/wikis"
        assert [(w.id, w.name) for w in wikis] == [("w-1", "Portal.wiki")]

    @pytest.mark.asyncio
    async def test_pages_batch_follows_continuation_token(self):
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            assert request.url.path == "/acme/Portal/_apis/wiki/wikis/w-1/pagesbatch"
            if "continuationToken" not in body:
                return httpx.Response(
                    200,
                    json={"value": [{"id": 1, "path": "/Home"}, {"id": 2, "path": "/Home/Arquitetura"}]},
                    headers={"x-ms-continuationtoken": "next-1"},
                )
            return httpx.Response(200, json={"value": [{"id": 3, "path": "/Glossario"}]})

        async with make_client(handler) as client:
            pages = await client.list_wiki_pages("w-1")

        assert [p.path for p in pages] == ["/Home", "/Home/Arquitetura", "/Glossario"]
        assert bodies == [{"top": 100}, {"top": 100, "continuationToken": "next-1"}]

    @pytest.mark.asyncio
    async def test_page_content_requests_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"id": 2, "path": "/Home/Arquitetura", "content": "# Arquitetura"})

        async with make_client(handler) as client:
            content = await client.get_wiki_page_content("w-1", "/Home/Arquitetura")

        assert content == "# Arquitetura"
        assert seen["params"]["path"] == "/Home/Arquitetura"
        assert seen["params"]["includeContent"] == "true"

    @pytest.mark.asyncio
    async def test_wikis_need_a_project(self):
        client = AzureDevOpsClient(ORG, "secret-pat", transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        with pytest.raises(ConfigurationError):
            await client.list_wikis()
        await client.aclose()
