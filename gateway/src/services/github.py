"""
GitHub service for webhook validation and repo operations.
"""

import hmac
import hashlib
import tempfile
import subprocess
import os
import shutil
from typing import Optional, Dict, Any
from urllib.parse import urlparse

from gateway.src.config import get_settings

settings = get_settings()

class RepositoryError(Exception):
    """Raised when a repository cannot be cloned or read."""
    pass

def verify_signature(payload: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """Verify GitHub webhook signature."""
    secret = settings.github_webhook_secret if secret is None else secret
    if not secret:
        # Skip verification if no secret configured (development)
        return True

    expected = "sha256=" + hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(expected, signature or "")

async def clone_repository(clone_url: str, commit_sha: Optional[str] = None, branch: Optional[str] = None) -> str:
    """
    Clone repository to temporary directory.
    Returns path to cloned repo.
    """
    temp_dir = tempfile.mkdtemp(prefix="conveyor_")
    repo_path = os.path.join(temp_dir, "repo")

    clone = ["git", "clone", "--depth", "1"]
    if branch:
        clone += ["--branch", branch]

    try:
        # Clone the repository
        subprocess.run(
            clone + [clone_url, repo_path],
            check=True,
            capture_output=True,
            timeout=120
        )

        # Checkout specific commit if provided
        if commit_sha:
            subprocess.run(
                ["git", "fetch", "--depth", "1", "origin", commit_sha],
                cwd=repo_path,
                capture_output=True,
                timeout=60
            )
            subprocess.run(
                ["git", "checkout", commit_sha],
                cwd=repo_path,
                check=True,
                capture_output=True,
                timeout=30
            )

        return repo_path
    except subprocess.TimeoutExpired:
        cleanup_repo(repo_path)
        raise RepositoryError("Repository clone timed out")
    except subprocess.CalledProcessError as e:
        cleanup_repo(repo_path)
        raise RepositoryError(f"Failed to clone repository: {e.stderr.decode(errors='replace')}")

async def fetch_pipeline_config(repo_path: str) -> Optional[str]:
    """
    Read the pipeline definition from a repository.
    Returns the raw YAML or None if not found.
    """
    for filename in settings.pipeline_files:
        config_path = os.path.join(repo_path, filename)
        if os.path.exists(config_path):
            with open(config_path, "r") as f:
                return f.read()

    return None

def parse_webhook_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract relevant info from GitHub webhook payload."""
    repo = payload.get("repository", {})
    head_commit = payload.get("head_commit") or {}

    # Get branch from ref (refs/heads/main -> main)
    ref = payload.get("ref", "")
    branch = ref.replace("refs/heads/", "") if ref.startswith("refs/heads/") else ref

    return {
        "repo_name": repo.get("name", ""),
        "repo_full_name": repo.get("full_name", ""),
        "clone_url": repo.get("clone_url", ""),
        "commit_sha": head_commit.get("id", payload.get("after", "")),
        "branch": branch,
        "commit_message": head_commit.get("message", ""),
        "pusher": payload.get("pusher", {}).get("name", ""),
    }

def repo_info_from_url(clone_url: str, branch: str, commit_sha: Optional[str] = None) -> Dict[str, Any]:
    """Build the same repo info a webhook would carry, from a clone URL."""
    path = urlparse(clone_url).path if "://" in clone_url else clone_url.split(":", 1)[-1]
    parts = [p for p in path.rstrip("/").split("/") if p]
    name = parts[-1][:-4] if parts and parts[-1].endswith(".git") else (parts[-1] if parts else clone_url)
    owner = parts[-2] if len(parts) >= 2 else ""

    return {
        "repo_name": name,
        "repo_full_name": f"{owner}/{name}" if owner else name,
        "clone_url": clone_url,
        "commit_sha": commit_sha or "",
        "branch": branch,
        "commit_message": "",
        "pusher": "",
    }

def cleanup_repo(repo_path: str):
    """Clean up cloned repository."""
    if repo_path:
        # Remove the parent temp directory
        shutil.rmtree(os.path.dirname(repo_path), ignore_errors=True)
