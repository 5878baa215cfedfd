"""Teardown gate: only delete a VPC once the CI run that created it is done.

The gate reads the GitHubRepository and GitHubRunId tags off the VPC and
asks the GitHub Actions API whether every job of that run has completed.
It fails open: missing tags, a missing token, or an error while asking
all let cleanup proceed, so resources are never stranded by an
unreliable status signal.
"""

import logging
import re
from typing import Callable, Optional

import requests

from deadline import Deadline
from stack.ec2 import StackError, get_tag_value

logger = logging.getLogger(__name__)

GITHUB_API_URL = 'https://api.github.com'
GITHUB_API_VERSION = '2022-11-28'
USER_AGENT = 'testbed-cleanup/1.0'
REQUEST_TIMEOUT = 10

REPOSITORY_TAG = 'GitHubRepository'
RUN_ID_TAG = 'GitHubRunId'

_REPO_PATTERN = re.compile(r'^[a-zA-Z0-9_.-]+/[a-zA-Z0-9_.-]+$')
_RUN_ID_PATTERN = re.compile(r'^\d+$')


class GateFormatError(ValueError):
    """Repository or run ID failed validation."""


class JobStatusError(Exception):
    """Job status could not be fetched or parsed."""


class TeardownBlocked(Exception):
    """CI jobs that own the VPC are still running."""

    def __init__(self, vpc_id: str):
        self.vpc_id = vpc_id
        super().__init__(f"github jobs are still running for vpc {vpc_id}")


def validate_repository(repository: str) -> bool:
    """True for 'org/repo' with letters, digits and '-_.' in each segment."""
    return bool(_REPO_PATTERN.fullmatch(repository or ''))


def validate_run_id(run_id: str) -> bool:
    """True for a non-empty string of ASCII digits."""
    return bool(_RUN_ID_PATTERN.fullmatch(run_id or '')) and run_id.isascii()


def check_jobs_completed(
    repository: str,
    run_id: str,
    token: str = '',
    session: Optional[requests.Session] = None,
    api_url: str = GITHUB_API_URL,
    timeout: float = REQUEST_TIMEOUT,
) -> bool:
    """Whether every job of a workflow run has completed.

    A 404 means the run record is gone and counts as completed. An empty
    job list counts as completed.

    Raises:
        GateFormatError: repository or run_id is malformed (no request is made)
        JobStatusError: Request failed, non-200 status, or unparseable body
    """
    if not validate_repository(repository):
        raise GateFormatError(f"invalid repository format: {repository}")
    if not validate_run_id(run_id):
        raise GateFormatError(f"invalid runID format: {run_id}")

    url = f"{api_url}/repos/{repository}/actions/runs/{run_id}/jobs"
    headers = {
        'Accept': 'application/vnd.github+json',
        'X-GitHub-Api-Version': GITHUB_API_VERSION,
        'User-Agent': USER_AGENT,
    }
    if token:
        headers['Authorization'] = f'Bearer {token}'

    http = session or requests
    try:
        resp = http.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise JobStatusError(f"timeout querying {url}") from e
    except requests.exceptions.RequestException as e:
        raise JobStatusError(f"failed to make request: {e}") from e

    if resp.status_code == 404:
        logger.debug(f"Run {repository}#{run_id} not found, treating as completed")
        return True
    if resp.status_code != 200:
        raise JobStatusError(f"unexpected status code: {resp.status_code}")

    try:
        jobs = resp.json().get('jobs') or []
    except (ValueError, AttributeError) as e:
        raise JobStatusError(f"failed to decode response: {e}") from e
    if not isinstance(jobs, list):
        raise JobStatusError(f"failed to decode response: 'jobs' is a {type(jobs).__name__}, not a list")

    for job in jobs:
        # A null entry has no status, so the run is not known to be done
        if job is None:
            return False
        if not isinstance(job, dict):
            raise JobStatusError(f"failed to decode response: job entry is a {type(job).__name__}")
        if job.get('status') != 'completed':
            logger.debug(f"Job '{job.get('name', '?')}' is {job.get('status')}")
            return False
    return True


class TeardownGate:
    """Authorizes VPC teardown against the owning CI run.

    Args:
        client: EC2 client used to read VPC tags
        token: GitHub token; empty skips the job-status check
        jobs_completed: Job-status check, replaceable in tests
    """

    def __init__(
        self,
        client,
        token: str = '',
        jobs_completed: Callable[[str, str, str], bool] = check_jobs_completed,
    ):
        self.client = client
        self.token = token
        self.jobs_completed = jobs_completed

    def get_tag_value(self, vpc_id: str, key: str) -> str:
        """Tag value on the VPC; '' when absent; StackError when the query fails."""
        return get_tag_value(self.client, vpc_id, key)

    def authorize(self, vpc_id: str) -> bool:
        """Whether teardown of vpc_id may proceed.

        Raises:
            StackError: The tags could not be read
        """
        repository = self.get_tag_value(vpc_id, REPOSITORY_TAG)
        run_id = self.get_tag_value(vpc_id, RUN_ID_TAG)

        if not self.token:
            logger.warning("GITHUB_TOKEN not set, skipping job status check")
            return True
        if not repository or not run_id:
            logger.info(f"VPC {vpc_id} has no GitHub run tags, skipping job status check")
            return True

        try:
            completed = self.jobs_completed(repository, run_id, self.token)
        except (GateFormatError, JobStatusError) as e:
            logger.warning(f"Failed to check GitHub job status: {e}")
            return True

        if not completed:
            logger.info(f"GitHub jobs for {repository} run {run_id} are still running")
            return False
        logger.info(f"All jobs completed for {repository} run {run_id}")
        return True

    def cleanup_vpc(self, vpc_id: str, deleter, force: bool = False) -> None:
        """Authorize, then delete every resource in vpc_id.

        Args:
            deleter: StackDeleter bound to the same client
            force: Skip the job-status check

        Raises:
            TeardownBlocked: Jobs are still running
            StackError: Tag read or deletion failed
        """
        if force:
            logger.warning(f"Skipping job status check for VPC {vpc_id} (--force)")
        elif not self.authorize(vpc_id):
            raise TeardownBlocked(vpc_id)
        else:
            logger.info(f"All jobs completed or no job information found, "
                        f"proceeding with cleanup of VPC {vpc_id}")
        deleter.delete_vpc_resources(vpc_id)


def cleanup_vpcs(
    vpc_ids: list[str],
    gate: TeardownGate,
    make_deleter: Callable[[Deadline], object],
    make_deadline: Callable[[], Deadline],
    force: bool = False,
) -> dict[str, Optional[Exception]]:
    """Clean up several VPCs one at a time, each under its own deadline.

    Ordinary failures are recorded and the next VPC is attempted.
    Cancellation stops the whole batch.

    Returns:
        Mapping of VPC ID to None (deleted) or the exception raised
    """
    results: dict[str, Optional[Exception]] = {}
    for vpc_id in vpc_ids:
        deadline = make_deadline()
        try:
            gate.cleanup_vpc(vpc_id, make_deleter(deadline), force=force)
            results[vpc_id] = None
        except (TeardownBlocked, StackError) as e:
            logger.error(f"Failed to clean up VPC {vpc_id}: {e}")
            results[vpc_id] = e
    return results
