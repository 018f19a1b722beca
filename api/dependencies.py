import logging
from functools import lru_cache
from typing import Optional

from api.services.review_service import ReviewDependencies, execute_pr_review
from common.cloud_tasks_service import CloudTasksService
from common.config import ServiceSettings, get_settings
from common.github_auth import InstallationTokenProvider, TokenCache
from common.github_client import GitHubClient
from common.job_models import RetryPolicy, ReviewJob
from common.job_runner import JobQueue, ReviewJobRunner, SlidingWindowRateLimiter
from common.review_store import ReviewStore, create_store
from reviewagent.agent.llm_client import PydanticAICompletionClient
from reviewagent.agent.review_pipeline import ReviewEngine

logger = logging.getLogger(__name__)

_runner: Optional[ReviewJobRunner] = None


@lru_cache
def get_review_store() -> ReviewStore:
    return create_store(get_settings())


@lru_cache
def get_token_provider() -> InstallationTokenProvider:
    settings = get_settings()
    return InstallationTokenProvider(
        app_id=settings.github_app_id,
        private_key=settings.load_private_key(),
        cache=TokenCache(),
        refresh_margin=settings.token_refresh_margin_seconds,
        timeout=settings.http_timeout_seconds,
        base_url=settings.github_api_url,
    )


@lru_cache
def get_github_client() -> GitHubClient:
    settings = get_settings()
    return GitHubClient(
        token_provider=get_token_provider(),
        api_url=settings.github_api_url,
        timeout=settings.http_timeout_seconds,
    )


def build_review_dependencies(settings: Optional[ServiceSettings] = None) -> ReviewDependencies:
    """Wire the collaborators of one review job from configuration."""
    settings = settings or get_settings()
    return ReviewDependencies(
        github=get_github_client(),
        engine=ReviewEngine(
            PydanticAICompletionClient(),
            delay_between_calls=settings.llm_delay_between_calls,
        ),
        store=get_review_store(),
        max_tokens_per_request=settings.max_tokens_per_request,
    )


def retry_policy_from(settings: ServiceSettings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.job_max_attempts,
        base_delay=settings.job_backoff_seconds,
    )


@lru_cache
def get_cloud_tasks_service() -> CloudTasksService:
    return CloudTasksService(get_settings())


def get_job_runner() -> ReviewJobRunner:
    """Process-wide in-process runner, used when Cloud Tasks is not configured."""
    global _runner
    if _runner is None:
        settings = get_settings()

        async def _handle(job: ReviewJob) -> None:
            await execute_pr_review(job, build_review_dependencies(settings))

        _runner = ReviewJobRunner(
            handler=_handle,
            concurrency=settings.job_concurrency,
            retry_policy=retry_policy_from(settings),
            rate_limiter=SlidingWindowRateLimiter(
                settings.rate_limit_max, settings.rate_limit_window_seconds
            ),
        )
    return _runner


def get_job_queue() -> JobQueue:
    cloud_tasks = get_cloud_tasks_service()
    if cloud_tasks.is_enabled:
        return cloud_tasks
    return get_job_runner()


def get_review_dependencies() -> ReviewDependencies:
    return build_review_dependencies()
