"""
Upgrade workflow steps and their orchestrator.

Each submodule implements one step of the workflow; the orchestrator
sequences them and owns every abort decision.
"""

from dbupgrade.workflow.artifact import ArtifactAcquirer, InstallerArtifact
from dbupgrade.workflow.continuation import (
    ConsoleRebootPrompt,
    ContinuationScheduler,
    PendingContinuation,
    RebootPrompt,
)
from dbupgrade.workflow.installer import InstallRunner
from dbupgrade.workflow.orchestrator import (
    Orchestrator,
    WorkflowContext,
    WorkflowResult,
    WorkflowState,
)
from dbupgrade.workflow.services import ServiceLifecycleController
from dbupgrade.workflow.version import (
    SemVer,
    VersionInspector,
    compare_versions,
    parse_semantic_version,
    should_upgrade,
)
from dbupgrade.workflow.workloads import DependentWorkloadController, has_active_work

__all__ = [
    "ArtifactAcquirer",
    "ConsoleRebootPrompt",
    "ContinuationScheduler",
    "DependentWorkloadController",
    "InstallRunner",
    "InstallerArtifact",
    "Orchestrator",
    "PendingContinuation",
    "RebootPrompt",
    "SemVer",
    "ServiceLifecycleController",
    "VersionInspector",
    "WorkflowContext",
    "WorkflowResult",
    "WorkflowState",
    "compare_versions",
    "has_active_work",
    "parse_semantic_version",
    "should_upgrade",
]
