"""
Repository host access (GitHub REST API).
"""

from .fetcher import BranchInfo, FileContent, GitHubFetcher, RepositoryTree

__all__ = ["BranchInfo", "FileContent", "GitHubFetcher", "RepositoryTree"]
