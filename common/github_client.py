"""
GitHub client for pull request reviews.

Fetches the raw diff and the changed-file metadata of a pull request and
publishes the finished review. Authenticates as a GitHub App installation
through ``InstallationTokenProvider``.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from github import Auth, Github, GithubException

from common.errors import ExternalServiceError, ExternalTimeoutError, GitGuardError, GitHubAuthError
from common.github_auth import InstallationTokenProvider
from common.job_models import PRData

logger = logging.getLogger(__name__)

DIFF_MEDIA_TYPE = "application/vnd.github.v3.diff"


def _raise_for_status(response: httpx.Response, what: str) -> None:
    status = response.status_code
    if status < 400:
        return
    # A 403 with an exhausted quota is a rate limit, not a permission problem.
    rate_limited = status == 429 or response.headers.get("x-ratelimit-remaining") == "0"
    if rate_limited or status >= 500:
        raise ExternalServiceError(f"GitHub error while fetching {what} (status {status})")
    if status in (401, 403):
        raise GitHubAuthError(f"GitHub denied {what} (status {status})")
    raise GitGuardError(f"GitHub returned {status} for {what}")


def _map_github_exception(exc: GithubException, what: str) -> GitGuardError:
    if exc.status in (401, 403):
        return GitHubAuthError(f"GitHub denied {what} (status {exc.status}): {exc.data}")
    if exc.status == 429 or exc.status >= 500:
        return ExternalServiceError(f"GitHub error during {what} (status {exc.status})")
    return GitGuardError(f"GitHub returned {exc.status} for {what}: {exc.data}")


class GitHubClient:
    """
    GitHub API client using GitHub App installation tokens.

    The raw diff is read over httpx; file metadata and review posting go
    through PyGithub, whose synchronous calls run in worker threads.
    """

    def __init__(
        self,
        token_provider: InstallationTokenProvider,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._tokens = token_provider
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    async def _token_for(self, pr: PRData) -> str:
        installation_id = pr.installation_id
        if installation_id is None:
            installation_id = await self._tokens.find_installation_id(pr.owner, pr.repo_name)
        return await self._tokens.get_token(installation_id)

    def _github(self, token: str) -> Github:
        return Github(auth=Auth.Token(token), base_url=self._api_url, timeout=int(self._timeout))

    async def _in_thread(self, func, what: str):
        try:
            return await asyncio.wait_for(asyncio.to_thread(func), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise ExternalTimeoutError(f"GitHub {what} timed out after {self._timeout}s") from exc
        except GithubException as exc:
            raise _map_github_exception(exc, what) from exc

    async def get_pr_diff(self, pr: PRData) -> str:
        """Return the unified diff of the pull request as GitHub renders it."""
        token = await self._token_for(pr)
        url = f"{self._api_url}/repos/{pr.owner}/{pr.repo_name}/pulls/{pr.pull_request_number}"
        headers = {
            "Accept": DIFF_MEDIA_TYPE,
            "Authorization": f"Bearer {token}",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as exc:
            raise ExternalTimeoutError(f"Diff fetch for {pr.repository}#{pr.pull_request_number} timed out") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Diff fetch for {pr.repository}#{pr.pull_request_number} failed: {exc}") from exc

        if response.status_code == 401 and pr.installation_id is not None:
            # Revoked before its expiry; the next attempt mints a new one.
            self._tokens.invalidate(pr.installation_id)
        _raise_for_status(response, f"diff of {pr.repository}#{pr.pull_request_number}")
        return response.text

    async def get_pr_files(self, pr: PRData) -> List[Dict[str, Any]]:
        """
        Get the changed files of a pull request.

        Returns:
            List of dicts with filename, status, additions, deletions, changes, patch
        """
        token = await self._token_for(pr)

        def _get_files():
            repository = self._github(token).get_repo(pr.repository)
            pull = repository.get_pull(pr.pull_request_number)
            return [
                {
                    "filename": f.filename,
                    "status": f.status,
                    "additions": f.additions,
                    "deletions": f.deletions,
                    "changes": f.changes,
                    "patch": f.patch,
                }
                for f in pull.get_files()
            ]

        return await self._in_thread(_get_files, f"file listing of {pr.repository}#{pr.pull_request_number}")

    async def fetch_pr_changes(self, pr: PRData) -> tuple[str, List[Dict[str, Any]]]:
        """
        Fetch the raw diff and the file metadata concurrently.

        The first failure cancels the other fetch and is raised.
        """
        tasks = [
            asyncio.ensure_future(self.get_pr_diff(pr)),
            asyncio.ensure_future(self.get_pr_files(pr)),
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        errors = [task.exception() for task in tasks if task in done and task.exception() is not None]
        if errors:
            raise errors[0]
        return tasks[0].result(), tasks[1].result()

    async def post_review(
        self,
        pr: PRData,
        body: str,
        event: str = "COMMENT",
        comments: Optional[List[Dict[str, Any]]] = None,
    ) -> bool:
        """
        Publish a review on the pull request.

        Failures are logged and swallowed: the review is already persisted
        and a posting problem must not fail the job. Returns True on success.
        """
        try:
            token = await self._token_for(pr)

            def _post():
                repository = self._github(token).get_repo(pr.repository)
                pull = repository.get_pull(pr.pull_request_number)
                pull.create_review(body=body, event=event, comments=comments or [])

            await self._in_thread(_post, f"review post on {pr.repository}#{pr.pull_request_number}")
        except Exception as exc:
            logger.error(
                "Failed to post review on %s#%s: %s",
                pr.repository, pr.pull_request_number, exc,
            )
            return False

        logger.info(
            "Posted %s review with %d inline comments on %s#%s",
            event, len(comments or []), pr.repository, pr.pull_request_number,
        )
        return True
