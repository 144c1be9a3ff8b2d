"""Remote repository connector for GitHub and Azure DevOps."""

from .api_client import Credential, ProviderClient, ProviderTransport, RateLimitTracker
from .azure_client import AzureDevOpsClient
from .bridge import RepositoryBridge
from .cancellation import CancellationToken, run_cancellable
from .connectivity import ConnectivityMonitor, ConnectivityReport, ProviderReachability
from .connector import RepositoryConnector
from .credential_store import CredentialEntry, CredentialStore
from .github_client import GitHubClient
from .identity import (
    display_name,
    group_by_repository,
    identity_for,
    parse_identity,
    resolve,
    resolve_repository_id,
)
from .models import (
    AuthMethod,
    BranchInfo,
    ConnectedRepository,
    DeviceFlowStart,
    DeviceFlowState,
    DeviceFlowStatus,
    FileContent,
    Provider,
    Repository,
    RepositoryInfo,
    TreeNode,
    TreeNodeType,
    TreeResult,
)
from .oauth_flow import DeviceFlowAuthenticator
from .services import RemoteServices, build_services
from .tree_cache import TreeCache

__all__ = [
    "AuthMethod",
    "AzureDevOpsClient",
    "BranchInfo",
    "CancellationToken",
    "ConnectedRepository",
    "ConnectivityMonitor",
    "ConnectivityReport",
    "Credential",
    "CredentialEntry",
    "CredentialStore",
    "DeviceFlowAuthenticator",
    "DeviceFlowStart",
    "DeviceFlowState",
    "DeviceFlowStatus",
    "FileContent",
    "GitHubClient",
    "Provider",
    "ProviderClient",
    "ProviderReachability",
    "ProviderTransport",
    "RateLimitTracker",
    "RemoteServices",
    "Repository",
    "RepositoryBridge",
    "RepositoryConnector",
    "RepositoryInfo",
    "TreeCache",
    "TreeNode",
    "TreeNodeType",
    "TreeResult",
    "build_services",
    "display_name",
    "group_by_repository",
    "identity_for",
    "parse_identity",
    "resolve",
    "resolve_repository_id",
    "run_cancellable",
]
