"""TeamCity REST API client for t9s.

This module provides:
- A thin httpx client for the TeamCity REST endpoints t9s needs
- Translation of HTTP failures into the t9s error taxonomy
- Conversion of TeamCity JSON into t9s entities
- TeamCity date parsing and human-readable formatting

Retries are not done here: the fetch pipeline owns the retry policy so
that it can report progress between attempts.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httpx

from t9s.errors import AuthError, NetworkError, NotFoundError, RateLimitedError
from t9s.models import Build, BuildConfiguration, BuildStatus, Project


logger = logging.getLogger(__name__)

ROOT_PROJECT_ID = "_Root"

PROJECT_FIELDS = (
    "id,name,parentProjectId,description,webUrl,"
    "projects(project(id)),buildTypes(buildType(id))"
)
BUILD_TYPE_FIELDS = (
    "count,href,buildType(id,name,description,projectName,projectId,href,webUrl)"
)
BUILD_FIELDS = (
    "count,nextHref,build(id,number,branchName,statusText,status,state,"
    "webUrl,buildTypeId,startDate,finishDate)"
)

_TC_DATETIME = re.compile(
    r"^(?P<stamp>\d{8}T\d{6})(?:\.(?P<frac>\d+))?(?P<offset>[+-]\d{4}|Z)?$"
)


def parse_teamcity_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse TeamCity's ``YYYYMMDDTHHMMSS[.fff]+HHMM`` timestamps.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    match = _TC_DATETIME.match(value.strip())
    if not match:
        return None
    offset = match.group("offset") or "+0000"
    if offset == "Z":
        offset = "+0000"
    try:
        parsed = datetime.strptime(match.group("stamp") + offset, "%Y%m%dT%H%M%S%z")
    except ValueError:
        return None
    frac = match.group("frac")
    if frac:
        parsed = parsed.replace(microsecond=int(frac[:6].ljust(6, "0")))
    return parsed


def format_started(value: Optional[datetime]) -> str:
    """Short local start time, e.g. ``05 Jan 14:03``."""
    if value is None:
        return ""
    return value.astimezone().strftime("%d %b %H:%M")


def format_duration(seconds: float) -> str:
    """Format a duration as ``H:MM:SS`` (or ``M:SS`` under an hour)."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def build_duration(build: Build, now: Optional[datetime] = None) -> str:
    """Duration of a build; running builds are measured up to now."""
    if build.started_at is None:
        return ""
    end = build.finished_at or now or datetime.now(timezone.utc)
    if end < build.started_at:
        return ""
    return format_duration((end - build.started_at).total_seconds())


def _build_status(data: dict[str, Any]) -> BuildStatus:
    state = (data.get("state") or "").lower()
    if state == "queued":
        return BuildStatus.QUEUED
    if state == "running":
        return BuildStatus.RUNNING
    status = (data.get("status") or "").upper()
    if status == "SUCCESS":
        return BuildStatus.SUCCESS
    if status == "FAILURE":
        return BuildStatus.FAILURE
    return BuildStatus.UNKNOWN


def project_from_json(data: dict[str, Any]) -> Project:
    """Convert a TeamCity project object."""
    parent_id = data.get("parentProjectId")
    if parent_id == ROOT_PROJECT_ID:
        parent_id = None
    children = (data.get("projects") or {}).get("project") or []
    build_types = (data.get("buildTypes") or {}).get("buildType") or []
    return Project(
        id=data["id"],
        name=data.get("name") or data["id"],
        parent_id=parent_id,
        child_project_ids=tuple(p["id"] for p in children),
        build_config_ids=tuple(b["id"] for b in build_types),
        description=data.get("description"),
        web_url=data.get("webUrl"),
    )


def build_config_from_json(data: dict[str, Any]) -> BuildConfiguration:
    """Convert a TeamCity buildType object."""
    return BuildConfiguration(
        id=data["id"],
        name=data.get("name") or data["id"],
        project_id=data.get("projectId") or "",
        project_name=data.get("projectName"),
        description=data.get("description"),
        web_url=data.get("webUrl"),
    )


def build_from_json(data: dict[str, Any], build_config_id: str) -> Build:
    """Convert a TeamCity build object."""
    status = _build_status(data)
    return Build(
        id=str(data["id"]),
        build_config_id=data.get("buildTypeId") or build_config_id,
        status=status,
        web_url=data.get("webUrl") or "",
        started_at=parse_teamcity_datetime(data.get("startDate")),
        finished_at=parse_teamcity_datetime(data.get("finishDate")),
        log_available=status is not BuildStatus.QUEUED,
        number=data.get("number"),
        branch_name=data.get("branchName"),
        status_text=data.get("statusText"),
    )


class TeamCityClient:
    """Client for the TeamCity REST API."""

    USER_AGENT = "t9s-TeamCity-Browser"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        page_size: int = 100,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize TeamCity client.

        Args:
            base_url: Server root, e.g. ``https://teamcity.example.com``.
            token: Access token sent as a Bearer credential.
            timeout: Per-request timeout in seconds.
            page_size: Number of builds requested per page.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.page_size = page_size
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {
                "Accept": "application/json",
                "User-Agent": self.USER_AGENT,
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "TeamCityClient":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Make a single request, translating failures into t9s errors.

        Raises:
            NetworkError: Transport failure or 5xx response.
            AuthError: 401/403 response.
            NotFoundError: 404 response.
            RateLimitedError: 429 response, or 503 with Retry-After.
        """
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e

        logger.debug("%s %s -> %s", method, response.request.url, response.status_code)
        status = response.status_code
        if status < 400:
            return response

        retry_after = _retry_after(response.headers)
        if status == 429 or (status == 503 and retry_after is not None):
            raise RateLimitedError(
                f"Rate limited by server ({status})",
                retry_after=retry_after or 0.0,
            )
        if status in (401, 403):
            raise AuthError(f"Authentication failed ({status}); check the token")
        if status == 404:
            raise NotFoundError(f"Not found: {response.request.url.path}")
        if status >= 500:
            raise NetworkError(f"Server error {status}")
        raise NetworkError(f"Request failed with status {status}")

    def _get_json(self, url: str, **kwargs) -> dict[str, Any]:
        response = self._request("GET", url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON from {url}") from e

    def list_projects(self, ids: Iterable[str] = ()) -> list[Project]:
        """Fetch projects.

        Args:
            ids: Project ids to fetch. Empty means every project on the
                server (the hidden ``_Root`` project excluded).

        Returns:
            Projects in request order (or server order when listing all).
            Ids the server no longer knows are skipped.
        """
        ids = list(ids)
        if not ids:
            data = self._get_json(
                "/app/rest/projects",
                params={"fields": f"count,project({PROJECT_FIELDS})"},
            )
            return [
                project_from_json(item)
                for item in data.get("project") or []
                if item.get("id") != ROOT_PROJECT_ID
            ]

        projects = []
        for project_id in ids:
            try:
                data = self._get_json(
                    f"/app/rest/projects/id:{project_id}",
                    params={"fields": PROJECT_FIELDS},
                )
            except NotFoundError:
                logger.warning("Project %s not found on server", project_id)
                continue
            projects.append(project_from_json(data))
        return projects

    def list_build_configs(self, project_id: str) -> list[BuildConfiguration]:
        """Fetch the build configurations of a project and its sub-projects.

        Raises:
            NotFoundError: If the project no longer exists.
        """
        try:
            data = self._get_json(
                "/app/rest/buildTypes",
                params={
                    "locator": f"affectedProject:(id:{project_id})",
                    "fields": BUILD_TYPE_FIELDS,
                },
            )
        except NotFoundError as e:
            raise NotFoundError(e.message, entity_id=project_id) from e
        return [build_config_from_json(item) for item in data.get("buildType") or []]

    def list_builds(
        self,
        build_config_id: str,
        page_token: Optional[str] = None,
    ) -> tuple[list[Build], Optional[str]]:
        """Fetch one page of builds, most recent first.

        Args:
            build_config_id: Build configuration id.
            page_token: ``nextHref`` of the previous page, None for the first.

        Returns:
            (builds, next_page_token); the token is None on the last page.
        """
        try:
            if page_token:
                data = self._get_json(page_token)
            else:
                data = self._get_json(
                    "/app/rest/builds",
                    params={
                        "locator": (
                            f"buildType:(id:{build_config_id}),state:any,"
                            f"defaultFilter:false,count:{self.page_size}"
                        ),
                        "fields": BUILD_FIELDS,
                    },
                )
        except NotFoundError as e:
            raise NotFoundError(e.message, entity_id=build_config_id) from e
        builds = [build_from_json(item, build_config_id) for item in data.get("build") or []]
        return builds, data.get("nextHref") or None

    def fetch_log(self, build_id: str) -> bytes:
        """Download the plain-text log of a build."""
        try:
            response = self._request(
                "GET",
                "/downloadBuildLog.html",
                params={"buildId": build_id, "plain": "true"},
                headers={"Accept": "text/plain"},
            )
        except NotFoundError as e:
            raise NotFoundError(e.message, entity_id=build_id) from e
        return response.content


def _retry_after(headers: httpx.Headers) -> Optional[float]:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
