"""Azure DevOps REST client (work item tracking, team iterations and wikis).

Payloads are decoded once into pydantic models at this boundary; the rest of
the application only sees ``AzureWorkItem``, ``AzureRevision``,
``AzureProject``, ``AzureIteration`` and the wiki models.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from app.config.logger import app_logger
from app.config.settings import settings

# Azure field reference names
FIELD_REMAINING_WORK = "Microsoft.VSTS.Scheduling.RemainingWork"
FIELD_COMPLETED_WORK = "Microsoft.VSTS.Scheduling.CompletedWork"
FIELD_ORIGINAL_ESTIMATE = "Microsoft.VSTS.Scheduling.OriginalEstimate"
FIELD_STORY_POINTS = "Microsoft.VSTS.Scheduling.StoryPoints"
FIELD_PRIORITY = "Microsoft.VSTS.Common.Priority"
FIELD_STATE = "System.State"
FIELD_TITLE = "System.Title"
FIELD_TYPE = "System.WorkItemType"
FIELD_TEAM_PROJECT = "System.TeamProject"
FIELD_ITERATION_PATH = "System.IterationPath"
FIELD_AREA_PATH = "System.AreaPath"
FIELD_ASSIGNED_TO = "System.AssignedTo"
FIELD_CREATED_DATE = "System.CreatedDate"
FIELD_CREATED_BY = "System.CreatedBy"
FIELD_CHANGED_DATE = "System.ChangedDate"
FIELD_CHANGED_BY = "System.ChangedBy"
FIELD_REVISED_DATE = "System.RevisedDate"
FIELD_CLOSED_DATE = "Microsoft.VSTS.Common.ClosedDate"
FIELD_DESCRIPTION = "System.Description"
FIELD_ACCEPTANCE_CRITERIA = "Microsoft.VSTS.Common.AcceptanceCriteria"
FIELD_TAGS = "System.Tags"

PARENT_LINK = "System.LinkTypes.Hierarchy-Reverse"
MAX_BATCH_IDS = 200
REVISIONS_PAGE_SIZE = 200
WIKI_PAGES_BATCH_SIZE = 100
MAX_RETRY_AFTER_SECONDS = 60.0

_datetime_adapter = TypeAdapter(datetime)


class AzureDevOpsError(Exception):
    """Non-success response from Azure DevOps."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(ValueError):
    """Required Azure DevOps settings are missing."""


def parse_azure_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return _datetime_adapter.validate_python(value)
    except ValidationError:
        return None


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class IdentityRef(BaseModel):
    """Identity reference as returned in System.AssignedTo / ChangedBy fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    display_name: Optional[str] = Field(default=None, alias="displayName")
    unique_name: Optional[str] = Field(default=None, alias="uniqueName")
    id: Optional[str] = None

    @classmethod
    def from_field(cls, value: Any) -> Optional["IdentityRef"]:
        if isinstance(value, dict):
            return cls.model_validate(value)
        if isinstance(value, str) and value.strip():
            # Older API versions return "Display Name <user@domain>"
            name, _, rest = value.partition("<")
            return cls(display_name=name.strip() or None, unique_name=rest.rstrip(">").strip() or None)
        return None

    @property
    def label(self) -> str:
        return self.display_name or self.unique_name or "Unknown"


class WorkItemRelation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rel: str
    url: str

    @property
    def target_id(self) -> Optional[int]:
        tail = self.url.rstrip("/").rsplit("/", 1)[-1]
        return int(tail) if tail.isdigit() else None


class _FieldBag(BaseModel):
    """Typed accessors over an Azure ``fields`` dictionary."""

    model_config = ConfigDict(extra="ignore")

    id: int
    rev: int = 0
    fields: Dict[str, Any] = Field(default_factory=dict)
    url: Optional[str] = None

    def has_field(self, name: str) -> bool:
        return name in self.fields and self.fields[name] is not None

    def number(self, name: str) -> Optional[float]:
        return _as_number(self.fields.get(name))

    def text(self, name: str) -> Optional[str]:
        value = self.fields.get(name)
        return None if value is None else str(value)

    def date(self, name: str) -> Optional[datetime]:
        return parse_azure_datetime(self.fields.get(name))

    def identity(self, name: str) -> Optional[IdentityRef]:
        return IdentityRef.from_field(self.fields.get(name))

    @property
    def remaining_work(self) -> Optional[float]:
        """Remaining work, or None when the field is absent from the payload."""
        return self.number(FIELD_REMAINING_WORK)

    @property
    def completed_work(self) -> Optional[float]:
        return self.number(FIELD_COMPLETED_WORK)

    @property
    def state(self) -> Optional[str]:
        return self.text(FIELD_STATE)

    @property
    def changed_date(self) -> Optional[datetime]:
        return self.date(FIELD_CHANGED_DATE)


class AzureWorkItem(_FieldBag):
    relations: Optional[List[WorkItemRelation]] = None

    @property
    def title(self) -> str:
        return self.text(FIELD_TITLE) or ""

    @property
    def work_item_type(self) -> str:
        return self.text(FIELD_TYPE) or "Task"

    @property
    def team_project(self) -> Optional[str]:
        return self.text(FIELD_TEAM_PROJECT)

    @property
    def iteration_path(self) -> Optional[str]:
        return self.text(FIELD_ITERATION_PATH)

    @property
    def closed_date(self) -> Optional[datetime]:
        return self.date(FIELD_CLOSED_DATE)

    @property
    def tags(self) -> List[str]:
        raw = self.text(FIELD_TAGS) or ""
        return [t.strip() for t in raw.split(";") if t.strip()]

    @property
    def parent_id(self) -> Optional[int]:
        for relation in self.relations or []:
            if relation.rel == PARENT_LINK:
                return relation.target_id
        return None


class AzureRevision(_FieldBag):
    """One entry from ``workitems/{id}/revisions`` (full field snapshot at ``rev``)."""

    @property
    def revised_date(self) -> Optional[datetime]:
        return self.changed_date or self.date(FIELD_REVISED_DATE)

    @property
    def revised_by(self) -> str:
        identity = self.identity(FIELD_CHANGED_BY)
        return identity.label if identity else "Unknown"


class AzureProject(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    description: Optional[str] = None
    url: Optional[str] = None
    state: Optional[str] = None
    last_update_time: Optional[datetime] = Field(default=None, alias="lastUpdateTime")


class IterationAttributes(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    finish_date: Optional[datetime] = Field(default=None, alias="finishDate")
    time_frame: Optional[str] = Field(default=None, alias="timeFrame")


class AzureIteration(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    path: str
    attributes: IterationAttributes = Field(default_factory=IterationAttributes)


class AzureWiki(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    name: str
    type: Optional[str] = None
    remote_url: Optional[str] = Field(default=None, alias="remoteUrl")


class AzureWikiPageRef(BaseModel):
    """Entry from ``pagesbatch``; the body has to be fetched separately."""

    model_config = ConfigDict(extra="ignore")

    id: int
    path: str



def escape_wiql(value: str) -> str:
    return value.replace("'", "''")


class AzureDevOpsClient:
    """Async client for the subset of Azure DevOps REST used by sync."""

    def __init__(
        self,
        org_url: str,
        pat: str,
        project: Optional[str] = None,
        team: Optional[str] = None,
        api_version: str = "7.0",
        timeout: float = 30.0,
        fetch_batch_size: int = 100,
        batch_delay_ms: int = 500,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not org_url or not pat:
            raise ConfigurationError("AZURE_DEVOPS_ORG_URL and AZURE_DEVOPS_PAT must be configured")
        self.org_url = org_url.rstrip("/")
        self.project = project or None
        self.team = team or None
        self.api_version = api_version
        self.fetch_batch_size = max(1, min(fetch_batch_size, MAX_BATCH_IDS))
        self.batch_delay_ms = batch_delay_ms
        self._client = httpx.AsyncClient(
            base_url=self.org_url,
            auth=httpx.BasicAuth("", pat),
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, **overrides: Any) -> "AzureDevOpsClient":
        kwargs: Dict[str, Any] = dict(
            org_url=settings.AZURE_DEVOPS_ORG_URL,
            pat=settings.AZURE_DEVOPS_PAT,
            project=settings.AZURE_DEVOPS_PROJECT,
            team=settings.AZURE_DEVOPS_TEAM,
            api_version=settings.AZURE_DEVOPS_API_VERSION,
            timeout=settings.AZURE_DEVOPS_TIMEOUT_SECONDS,
            fetch_batch_size=settings.SYNC_FETCH_BATCH_SIZE,
            batch_delay_ms=settings.SYNC_BATCH_DELAY_MS,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    async def __aenter__(self) -> "AzureDevOpsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        params = dict(kwargs.pop("params", None) or {})
        params.setdefault("api-version", self.api_version)

        for attempt in (1, 2):
            response = await self._client.request(method, path, params=params, **kwargs)
            if response.status_code in (429, 503) and attempt == 1:
                wait = _retry_after_seconds(response)
                app_logger.warning(f"Azure DevOps throttled {method} {path}; retrying in {wait:.1f}s")
                await asyncio.sleep(wait)
                continue
            break

        if response.status_code >= 400:
            raise AzureDevOpsError(
                f"Azure DevOps {method} {path} failed with {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )
        return response

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        if not response.content:
            return {}
        return response.json()


    def _project_path(self, project: Optional[str]) -> str:
        name = project or self.project
        return f"/{quote(name)}" if name else ""

    async def query_wiql(self, query: str, project: Optional[str] = None) -> List[int]:
        """Run a WIQL query and return the matching work item ids in result order."""
        data = await self._request(
            "POST",
            f"{self._project_path(project)}/_apis/wit/wiql",
            json={"query": query},
        )
        return [int(ref["id"]) for ref in data.get("workItems", []) if "id" in ref]

    async def changed_work_item_ids(self, since: datetime, project: Optional[str] = None) -> List[int]:
        # WIQL rejects a time component on date comparisons in some API versions
        since_date = since.strftime("%Y-%m-%d")
        query = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.ChangedDate] >= '{since_date}' "
            "ORDER BY [System.ChangedDate] DESC"
        )
        return await self.query_wiql(query, project)

    async def work_item_ids_for_iteration(self, iteration_path: str, project: Optional[str] = None) -> List[int]:
        query = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.IterationPath] = '{escape_wiql(iteration_path)}' "
            "ORDER BY [System.Id]"
        )
        return await self.query_wiql(query, project)

    async def get_work_items(self, ids: Sequence[int], expand_relations: bool = True) -> List[AzureWorkItem]:
        """Fetch work items in batches, skipping ids Azure no longer returns."""
        items: List[AzureWorkItem] = []
        unique_ids = list(dict.fromkeys(int(i) for i in ids))
        for start in range(0, len(unique_ids), self.fetch_batch_size):
            if start and self.batch_delay_ms:
                await asyncio.sleep(self.batch_delay_ms / 1000.0)
            batch = unique_ids[start : start + self.fetch_batch_size]
            params: Dict[str, Any] = {"ids": ",".join(str(i) for i in batch), "errorPolicy": "omit"}
            if expand_relations:
                params["$expand"] = "relations"
            data = await self._request("GET", "/_apis/wit/workitems", params=params)
            for raw in data.get("value", []):
                if not raw:
                    continue
                items.append(AzureWorkItem.model_validate(raw))
        return items

    async def get_work_item(self, work_item_id: int) -> AzureWorkItem:
        data = await self._request("GET", f"/_apis/wit/workitems/{int(work_item_id)}")
        return AzureWorkItem.model_validate(data)

    async def get_revisions(self, work_item_id: int) -> List[AzureRevision]:
        """All revisions of a work item, following ``$top``/``$skip`` paging."""
        revisions: List[AzureRevision] = []
        skip = 0
        while True:
            data = await self._request(
                "GET",
                f"/_apis/wit/workitems/{int(work_item_id)}/revisions",
                params={"$top": REVISIONS_PAGE_SIZE, "$skip": skip},
            )
            page = data.get("value", [])
            revisions.extend(AzureRevision.model_validate(raw) for raw in page)
            if len(page) < REVISIONS_PAGE_SIZE:
                break
            skip += len(page)
        return revisions

    async def list_projects(self) -> List[AzureProject]:
        data = await self._request("GET", "/_apis/projects", params={"$top": 500})
        return [AzureProject.model_validate(raw) for raw in data.get("value", [])]

    async def list_iterations(self, project: Optional[str] = None, team: Optional[str] = None) -> List[AzureIteration]:
        project_name = project or self.project
        if not project_name:
            raise ConfigurationError("A project name is required to list iterations")
        team_name = team or self.team or f"{project_name} Team"
        data = await self._request(
            "GET",
            f"/{quote(project_name)}/{quote(team_name)}/_apis/work/teamsettings/iterations",
        )
        return [AzureIteration.model_validate(raw) for raw in data.get("value", [])]

    def _wiki_project(self, project: Optional[str]) -> str:
        path = self._project_path(project)
        if not path:
            raise ConfigurationError("A project name is required to read wikis")
        return path

    async def list_wikis(self, project: Optional[str] = None) -> List[AzureWiki]:
        data = await self._request("GET", f"{self._wiki_project(project)}/_apis/wiki/wikis")
        return [AzureWiki.model_validate(raw) for raw in data.get("value", [])]

    async def list_wiki_pages(self, wiki_id: str, project: Optional[str] = None) -> List[AzureWikiPageRef]:
        """Every page of a wiki, following the ``pagesbatch`` continuation token."""
        path = f"{self._wiki_project(project)}/_apis/wiki/wikis/{quote(wiki_id)}/pagesbatch"
        pages: List[AzureWikiPageRef] = []
        token: Optional[str] = None
        while True:
            body: Dict[str, Any] = {"top": WIKI_PAGES_BATCH_SIZE}
            if token:
                body["continuationToken"] = token
            response = await self._send("POST", path, json=body)
            data = response.json() if response.content else {}
            pages.extend(AzureWikiPageRef.model_validate(raw) for raw in data.get("value", []))
            token = response.headers.get("x-ms-continuationtoken")
            if not token:
                break
        return pages

    async def get_wiki_page_content(self, wiki_id: str, page_path: str, project: Optional[str] = None) -> str:
        """Markdown body of the page at ``page_path`` (empty for container pages)."""
        data = await self._request(
            "GET",
            f"{self._wiki_project(project)}/_apis/wiki/wikis/{quote(wiki_id)}/pages",
            params={"path": page_path, "includeContent": "true"},
        )
        return data.get("content") or ""



def _retry_after_seconds(response: httpx.Response) -> float:
    raw = response.headers.get("Retry-After")
    try:
        wait = float(raw) if raw is not None else 5.0
    except ValueError:
        wait = 5.0
    return max(0.0, min(wait, MAX_RETRY_AFTER_SECONDS))
