from .api import GitHubAPI, RepositoryDescriptor, fetch_repositories
from .clone import GitCliSource, LocalClone, RepositorySource, clone_repository

__all__ = [
    "GitHubAPI",
    "RepositoryDescriptor",
    "fetch_repositories",
    "GitCliSource",
    "LocalClone",
    "RepositorySource",
    "clone_repository",
]
