from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple
from urllib.parse import parse_qs, urlparse

import requests

from org_backup.config import DEFAULT_API_URL
from org_backup.exceptions import AuthError, ForgeError, TransientError

DEFAULT_ACCEPT_HEADER = "application/vnd.github+json"
DEFAULT_PAGE_SIZE = 100
REQUEST_TIMEOUT = 30

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryDescriptor:
    full_name: str
    clone_url: str
    name: str


class RepositoryLister(Protocol):
    def list_repositories_page(
        self, organization: str, page: int
    ) -> Tuple[List[RepositoryDescriptor], Optional[int]]:
        ...


class GitHubAPI:
    """Thin GitHub REST client authenticated with basic auth."""

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not username or not password:
            raise AuthError("GitHub username and password must both be provided")
        self._session = session or requests.Session()
        self._session.auth = (username, password)
        self._session.headers.update(
            {
                "Accept": DEFAULT_ACCEPT_HEADER,
                "User-Agent": "org-backup",
            }
        )
        self._base_url = base_url.rstrip("/")

    def authenticate(self) -> Dict[str, Any]:
        """Verify the credentials by fetching the authenticated user."""
        response = self._get("user")
        user = self._decode(response)
        if not isinstance(user, dict):
            raise TransientError(f"GitHub returned an unexpected user payload from {response.url}")
        LOG.info("Authenticated to GitHub as %s", user.get("login", "<unknown>"))
        return user

    def list_repositories_page(
        self, organization: str, page: int
    ) -> Tuple[List[RepositoryDescriptor], Optional[int]]:
        response = self._get(
            f"orgs/{organization}/repos",
            params={"type": "all", "per_page": DEFAULT_PAGE_SIZE, "page": page},
        )
        payload = self._decode(response)
        if not isinstance(payload, list):
            raise TransientError(f"GitHub returned a non-list repository page for {organization} (page {page})")

        repos = []
        for item in payload:
            if not isinstance(item, dict) or not all(item.get(k) for k in ("full_name", "clone_url", "name")):
                LOG.warning("Ignoring malformed repository entry in %s page %d", organization, page)
                continue
            repos.append(
                RepositoryDescriptor(
                    full_name=item["full_name"],
                    clone_url=item["clone_url"],
                    name=item["name"],
                )
            )
        return repos, self._extract_next_page(response.headers.get("Link"))

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise TransientError(f"GitHub returned a body that is not JSON from {response.url}: {exc}") from exc

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            response = self._session.get(url, params=params, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as exc:
            raise TransientError(f"GitHub request to {url} failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            LOG.error("GitHub rejected credentials: %s %s", status, url)
            raise AuthError(f"GitHub rejected credentials ({status}) for {url}")
        if status >= 500:
            LOG.warning("GitHub server error: %s %s", status, url)
            raise TransientError(f"GitHub returned {status} for {url}")
        if status >= 400:
            LOG.error("GitHub API request failed: %s %s %s", status, url, response.text)
            raise ForgeError(f"GitHub returned {status} for {url}")
        return response

    @staticmethod
    def _extract_next_page(link_header: Optional[str]) -> Optional[int]:
        if not link_header:
            return None
        parts = [p.strip() for p in link_header.split(",")]
        for part in parts:
            if 'rel="next"' in part:
                start = part.find("<") + 1
                end = part.find(">")
                query = parse_qs(urlparse(part[start:end]).query)
                pages = query.get("page")
                if pages and pages[0].isdigit():
                    return int(pages[0])
        return None


def fetch_repositories(client: RepositoryLister, organization: str) -> List[RepositoryDescriptor]:
    """Collect every repository of an organization, following all pages."""
    repositories: List[RepositoryDescriptor] = []
    page: Optional[int] = 1
    while page is not None:
        batch, page = client.list_repositories_page(organization, page)
        repositories.extend(batch)
    LOG.info("Found %d repositories in %s", len(repositories), organization)
    return repositories
