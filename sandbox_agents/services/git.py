"""Git helpers: repository reference parsing and branch naming."""

import re
import subprocess
from uuid import UUID

GITHUB_REPO_PATTERN = re.compile(r"github\.com[:/](.+/.+?)(?:\.git)?/?$")

# Conservative subset of git-check-ref-format
BRANCH_NAME_PATTERN = re.compile(r"^(?!/)(?!.*//)(?!.*\.\.)(?!.*@\{)[A-Za-z0-9._/\-]{1,200}(?<![/.])$")

PLACEHOLDER_PREFIX = "agent/"


class GitError(Exception):
    """Raised when local git operations fail."""


class GitService:
    """Service for git-related operations."""

    @staticmethod
    def get_current_repo() -> tuple[str, str]:
        """Get current git repository URL and org/name.

        Returns:
            tuple[str, str]: (repository_url, org/name)

        Raises:
            GitError: If not in a git repository or no remote found
        """
        try:
            result = subprocess.run(
                ["git", "remote", "get-url", "origin"],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise GitError("Not in a git repository or no remote 'origin' found") from e

        remote_url = result.stdout.strip()
        try:
            return GitService.parse_github_url(remote_url)
        except ValueError as e:
            raise GitError(str(e)) from e

    @staticmethod
    def normalize_repo_url(repo: str) -> str:
        """Normalize repository input to an HTTPS GitHub URL.

        Handles multiple input formats:
        - org/name format: "myorg/myrepo"
        - Full HTTPS URL: "https://github.com/myorg/myrepo.git"
        - SSH URL: "git@github.com:myorg/myrepo.git"

        SSH URLs are rewritten because clones authenticate with the owner's
        token over HTTPS.

        Raises:
            ValueError: If the reference cannot be parsed
        """
        repo = repo.strip()
        if not repo.startswith(("http://", "https://", "git@")):
            if not re.fullmatch(r"[\w.\-]+/[\w.\-]+", repo):
                raise ValueError(f"Could not parse repository reference: {repo}")
            return f"https://github.com/{repo.removesuffix('.git')}.git"

        return GitService.parse_github_url(repo)[0]

    @staticmethod
    def parse_github_url(repo: str) -> tuple[str, str]:
        """Parse GitHub repository URL to extract org/repo.

        Returns:
            tuple[str, str]: (normalized_https_url, org/repo)

        Raises:
            ValueError: If URL cannot be parsed as a GitHub repository
        """
        match = GITHUB_REPO_PATTERN.search(repo)
        if not match:
            raise ValueError(f"Could not parse GitHub repo from URL: {repo}")

        org_repo = match.group(1)
        return f"https://github.com/{org_repo}.git", org_repo

    @staticmethod
    def placeholder_branch(task_id: UUID) -> str:
        """Branch used until a human-readable name has been supplied."""
        return f"{PLACEHOLDER_PREFIX}{task_id.hex[:8]}"

    @staticmethod
    def is_valid_branch_name(name: str) -> bool:
        return bool(BRANCH_NAME_PATTERN.match(name)) and not name.endswith(".lock")
