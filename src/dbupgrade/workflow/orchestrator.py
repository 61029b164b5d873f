"""
Upgrade workflow orchestrator.

Sequences the guarded steps of an in-place database engine upgrade:

- privilege_check: the caller must be an administrator
- path_validated: the installation directory exists
- version_checked: installed version is below the target (else done)
- workloads_snapshotted: candidate workloads captured, none active
- workloads_disabled: candidates disabled and verified
- services_stopped: dependent services converged to stopped
- artifact_verified: installer downloaded and digest matched
- installed: installer exited 0
- workloads_restored: workloads re-enabled, services started
- restart_scheduled / restart_skipped: reboot with continuation, or not
- done

Any gate failure moves to the terminal aborted state. Each step receives an
immutable WorkflowContext and returns a new one; the orchestrator keeps the
most recent context so an abort knows exactly what has already been mutated.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from dbupgrade.backup_client import BackupApplication, Workload
from dbupgrade.errors import (
    AcquisitionFailure,
    ExternalStateConflict,
    InstallFailure,
    InternalError,
    PreconditionFailure,
    RestorationFailure,
    UnavailableError,
    UpgradeError,
)
from dbupgrade.logging import get_logger
from dbupgrade.privileges import current_user_is_administrator
from dbupgrade.workflow import systemd
from dbupgrade.workflow.artifact import (
    ArtifactAcquirer,
    InstallerArtifact,
    artifact_filename,
    ensure_staging_dir,
    remove_staging_dir,
)
from dbupgrade.workflow.continuation import (
    ConsoleRebootPrompt,
    ContinuationScheduler,
    RebootPrompt,
)
from dbupgrade.workflow.installer import InstallRunner
from dbupgrade.workflow.services import ServiceLifecycleController
from dbupgrade.workflow.version import (
    SemVer,
    VersionInspector,
    parse_semantic_version,
    should_upgrade,
)
from dbupgrade.workflow.workloads import DependentWorkloadController, has_active_work

if TYPE_CHECKING:
    from dbupgrade.config import AppConfig

logger = get_logger(__name__)

EXIT_SUCCESS = 0


class WorkflowState(str, Enum):
    """States of the upgrade workflow."""

    INIT = "init"
    PRIVILEGE_CHECK = "privilege_check"
    PATH_VALIDATED = "path_validated"
    VERSION_CHECKED = "version_checked"
    WORKLOADS_SNAPSHOTTED = "workloads_snapshotted"
    WORKLOADS_DISABLED = "workloads_disabled"
    SERVICES_STOPPED = "services_stopped"
    ARTIFACT_VERIFIED = "artifact_verified"
    INSTALLED = "installed"
    WORKLOADS_RESTORED = "workloads_restored"
    RESTART_SCHEDULED = "restart_scheduled"
    RESTART_SKIPPED = "restart_skipped"
    DONE = "done"
    ABORTED = "aborted"


_TERMINAL_STATES = {WorkflowState.DONE, WorkflowState.ABORTED}

# Valid state transitions; every non-terminal state may also abort
_VALID_TRANSITIONS: dict[WorkflowState, set[WorkflowState]] = {
    WorkflowState.INIT: {WorkflowState.PRIVILEGE_CHECK},
    WorkflowState.PRIVILEGE_CHECK: {WorkflowState.PATH_VALIDATED},
    WorkflowState.PATH_VALIDATED: {WorkflowState.VERSION_CHECKED},
    WorkflowState.VERSION_CHECKED: {
        WorkflowState.WORKLOADS_SNAPSHOTTED,
        WorkflowState.DONE,
    },
    WorkflowState.WORKLOADS_SNAPSHOTTED: {WorkflowState.WORKLOADS_DISABLED},
    WorkflowState.WORKLOADS_DISABLED: {WorkflowState.SERVICES_STOPPED},
    WorkflowState.SERVICES_STOPPED: {WorkflowState.ARTIFACT_VERIFIED},
    WorkflowState.ARTIFACT_VERIFIED: {WorkflowState.INSTALLED},
    WorkflowState.INSTALLED: {
        WorkflowState.WORKLOADS_RESTORED,
        WorkflowState.RESTART_SCHEDULED,
    },
    WorkflowState.WORKLOADS_RESTORED: {WorkflowState.RESTART_SKIPPED},
    WorkflowState.RESTART_SCHEDULED: {WorkflowState.DONE},
    WorkflowState.RESTART_SKIPPED: {WorkflowState.DONE},
    WorkflowState.DONE: set(),
    WorkflowState.ABORTED: set(),
}


def can_transition(current: WorkflowState, new: WorkflowState) -> bool:
    if new == WorkflowState.ABORTED:
        return current not in _TERMINAL_STATES
    return new in _VALID_TRANSITIONS.get(current, set())


class WorkflowContext(BaseModel):
    """
    Decision flags threaded through the workflow.

    Frozen: steps return an updated copy instead of mutating it.
    """

    model_config = ConfigDict(frozen=True)

    state: WorkflowState = WorkflowState.INIT
    target_version: SemVer
    current_version: SemVer | None = None
    snapshot: tuple[Workload, ...] = ()
    no_managed_workloads: bool = False
    workloads_disabled: bool = False
    services_stopped: bool = False
    stopped_services: tuple[str, ...] = ()
    staging_created: bool = False
    artifact: InstallerArtifact | None = None
    installer_exit_code: int | None = None
    continuation_registered: bool = False
    restarted: bool = False
    restoration_failures: tuple[str, ...] = ()

    def evolve(self, **changes: Any) -> WorkflowContext:
        return self.model_copy(update=changes)

    @property
    def snapshot_names(self) -> list[str]:
        return [w.name for w in self.snapshot]


class WorkflowResult(BaseModel):
    """Outcome of one workflow run."""

    status: str = Field(
        ..., description="upgraded, up_to_date, failed or aborted"
    )
    exit_code: int = Field(..., description="Process exit code")
    final_state: WorkflowState
    message: str
    current_version: str | None = None
    target_version: str
    installer_exit_code: int | None = None
    restarted: bool = False
    restoration_failures: list[str] = Field(default_factory=list)
    error: dict[str, Any] | None = None


class Orchestrator:
    """
    Runs the upgrade workflow against injected collaborators.

    Attributes:
        config: Application configuration.
        context: The most recent workflow context.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        version_inspector: VersionInspector,
        workloads: DependentWorkloadController,
        services: ServiceLifecycleController,
        acquirer: ArtifactAcquirer,
        installer: InstallRunner,
        continuation: ContinuationScheduler,
        reboot_prompt: RebootPrompt | None = None,
        is_admin: Callable[[], bool] = current_user_is_administrator,
        reboot: Callable[[], Awaitable[None]] = systemd.reboot,
    ) -> None:
        self.config = config
        self._version_inspector = version_inspector
        self._workloads = workloads
        self._services = services
        self._acquirer = acquirer
        self._installer = installer
        self._continuation = continuation
        self._reboot_prompt = reboot_prompt or ConsoleRebootPrompt()
        self._is_admin = is_admin
        self._reboot = reboot
        self._context: WorkflowContext | None = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        backup_app: BackupApplication,
        **overrides: Any,
    ) -> Orchestrator:
        """Build an orchestrator with the production collaborators."""
        upgrade = config.upgrade
        collaborators: dict[str, Any] = {
            "version_inspector": VersionInspector(upgrade.binary_path),
            "workloads": DependentWorkloadController(
                backup_app, recency_days=config.workloads.recency_days
            ),
            "services": ServiceLifecycleController(
                config.services.service_patterns,
                config.services.process_patterns,
                settle_seconds=config.services.settle_seconds,
                backoff_factor=config.services.backoff_factor,
                max_backoff_seconds=config.services.max_backoff_seconds,
                stop_timeout_seconds=config.services.stop_timeout_seconds,
            ),
            "acquirer": ArtifactAcquirer(timeout=upgrade.download_timeout_seconds),
            "installer": InstallRunner(
                upgrade.installer_args,
                working_dir=upgrade.installer_working_dir,
                interfering_processes=config.installer.interfering_processes,
                settle_seconds=config.installer.settle_seconds,
                timeout=upgrade.installer_timeout_seconds,
            ),
            "continuation": ContinuationScheduler(
                config.continuation.unit_name,
                config.continuation.unit_dir,
                environment_file=config.continuation.environment_file,
                python_executable=config.continuation.python_executable,
                grace_seconds=config.continuation.grace_seconds,
            ),
        }
        collaborators.update(overrides)
        return cls(config, **collaborators)

    @property
    def context(self) -> WorkflowContext | None:
        return self._context

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _record(self, ctx: WorkflowContext, **changes: Any) -> WorkflowContext:
        """Return an updated context and remember it as the latest."""
        ctx = ctx.evolve(**changes)
        self._context = ctx
        return ctx

    def _advance(
        self,
        ctx: WorkflowContext,
        new_state: WorkflowState,
        **changes: Any,
    ) -> WorkflowContext:
        if not can_transition(ctx.state, new_state):
            raise InternalError(
                f"Invalid state transition from {ctx.state.value} to {new_state.value}",
                details={"current_state": ctx.state.value, "target_state": new_state.value},
            )
        logger.info(
            f"State transition: {ctx.state.value} -> {new_state.value}",
            extra={"old_state": ctx.state.value, "new_state": new_state.value},
        )
        return self._record(ctx, state=new_state, **changes)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _check_privileges(self, ctx: WorkflowContext) -> WorkflowContext:
        if not self._is_admin():
            raise PreconditionFailure(
                "The upgrade must be run as an administrator (root)",
            )
        return self._advance(ctx, WorkflowState.PRIVILEGE_CHECK)

    async def _validate_path(self, ctx: WorkflowContext) -> WorkflowContext:
        install_path = Path(self.config.upgrade.install_path)
        if not install_path.is_dir():
            raise PreconditionFailure(
                f"Installation path does not exist: {install_path}",
                details={"path": str(install_path)},
            )
        return self._advance(ctx, WorkflowState.PATH_VALIDATED)

    async def _check_version(self, ctx: WorkflowContext) -> WorkflowContext:
        current = await self._version_inspector.current_version()
        if current is None:
            raise PreconditionFailure(
                "Could not read the installed version",
                details={"binary": str(self.config.upgrade.binary_path)},
            )
        logger.info(
            f"Installed version {current}, target version {ctx.target_version}",
            extra={"current_version": str(current), "target_version": str(ctx.target_version)},
        )
        ctx = self._advance(ctx, WorkflowState.VERSION_CHECKED, current_version=current)
        if not should_upgrade(current, ctx.target_version):
            return ctx

        upgrade = self.config.upgrade
        if not upgrade.artifact_url or not upgrade.artifact_sha256:
            raise PreconditionFailure(
                "Installer URL and SHA-256 digest must both be configured",
                details={"artifact_url": upgrade.artifact_url or None},
            )
        return ctx

    async def _snapshot_workloads(self, ctx: WorkflowContext) -> WorkflowContext:
        candidates = await self._workloads.list_candidate_workloads()
        if has_active_work(candidates):
            active = [w.name for w in candidates if w.is_active]
            raise ExternalStateConflict(
                "Workloads are actively running; retry when they have finished",
                details={"workloads": active},
            )

        no_managed = not candidates
        if no_managed:
            if self.config.upgrade.skip_if_unused:
                raise PreconditionFailure(
                    "No enabled workloads depend on the database; skipping upgrade",
                )
            logger.info("No enabled workloads found; re-enabling will be skipped")
        else:
            logger.info(
                f"Captured {len(candidates)} workload(s) to pause",
                extra={"workloads": [w.name for w in candidates]},
            )
        return self._advance(
            ctx,
            WorkflowState.WORKLOADS_SNAPSHOTTED,
            snapshot=candidates,
            no_managed_workloads=no_managed,
        )

    async def _disable_workloads(self, ctx: WorkflowContext) -> WorkflowContext:
        if not ctx.no_managed_workloads:
            ctx = self._record(ctx, workloads_disabled=True)
            await self._workloads.disable_all(ctx.snapshot)
        return self._advance(ctx, WorkflowState.WORKLOADS_DISABLED)

    async def _stop_services(self, ctx: WorkflowContext) -> WorkflowContext:
        ctx = self._record(ctx, services_stopped=True)
        stopped = await self._services.stop_all()
        return self._advance(
            ctx, WorkflowState.SERVICES_STOPPED, stopped_services=tuple(stopped)
        )

    async def _acquire_artifact(self, ctx: WorkflowContext) -> WorkflowContext:
        upgrade = self.config.upgrade
        staging = Path(upgrade.staging_dir)
        if ensure_staging_dir(staging):
            ctx = self._record(ctx, staging_created=True)

        destination = staging / (upgrade.artifact_name or artifact_filename(upgrade.artifact_url))
        artifact = await self._acquirer.acquire(
            upgrade.artifact_url, destination, upgrade.artifact_sha256
        )
        return self._advance(ctx, WorkflowState.ARTIFACT_VERIFIED, artifact=artifact)

    async def _install(self, ctx: WorkflowContext) -> WorkflowContext:
        if ctx.artifact is None:
            raise AcquisitionFailure("No verified installer artifact in this run")

        exit_code = await self._installer.run(ctx.artifact)
        ctx = self._record(ctx, installer_exit_code=exit_code)
        if exit_code != 0:
            raise InstallFailure(
                f"Installer failed with exit code {exit_code}",
                details={"installer_exit_code": exit_code},
            )
        return self._advance(ctx, WorkflowState.INSTALLED)

    async def _finish(self, ctx: WorkflowContext) -> WorkflowContext:
        """Either reboot with a continuation, or restore everything now."""
        if self.config.upgrade.restart:
            ctx = await self._restart(ctx)
            if ctx.restarted:
                return self._advance(ctx, WorkflowState.DONE)

        ctx = await self._restore(ctx)
        ctx = self._advance(ctx, WorkflowState.WORKLOADS_RESTORED)
        ctx = self._advance(ctx, WorkflowState.RESTART_SKIPPED)
        return self._advance(ctx, WorkflowState.DONE)

    async def _restart(self, ctx: WorkflowContext) -> WorkflowContext:
        """
        Register the continuation, run the countdown and reboot.

        Falls back to the non-restart path (returned context has
        ``restarted=False``) if registration, the countdown or the reboot
        itself does not go through.
        """
        if not ctx.no_managed_workloads and ctx.snapshot:
            try:
                await self._continuation.register(
                    ctx.snapshot_names,
                    self.config.logging.file_path,
                    config_path=self.config.source_path,
                    environment=self.config.continuation_environment(),
                )
            except UnavailableError as e:
                logger.error(
                    f"Could not register the post-reboot continuation: {e.message}; "
                    "restoring now instead of rebooting"
                )
                return ctx
            ctx = self._record(ctx, continuation_registered=True)

        proceed = await self._reboot_prompt.countdown(
            self.config.continuation.countdown_seconds
        )
        if not proceed:
            logger.warning("Reboot cancelled; restoring workloads and services now")
            return await self._drop_continuation(ctx)

        await self._cleanup(ctx)
        ctx = self._record(ctx, staging_created=False)
        logger.info("Requesting reboot")
        try:
            await self._reboot()
        except UnavailableError as e:
            logger.error(f"Reboot failed: {e.message}; restoring now")
            return await self._drop_continuation(ctx)
        return self._advance(ctx, WorkflowState.RESTART_SCHEDULED, restarted=True)

    async def _drop_continuation(self, ctx: WorkflowContext) -> WorkflowContext:
        if ctx.continuation_registered:
            try:
                await self._continuation.unregister()
            except UnavailableError as e:
                logger.error(f"Failed to remove continuation unit: {e.message}")
            ctx = self._record(ctx, continuation_registered=False)
        return ctx

    async def _restore(self, ctx: WorkflowContext) -> WorkflowContext:
        """Re-enable snapshotted workloads and start stopped services."""
        failures = list(ctx.restoration_failures)
        if ctx.workloads_disabled and not ctx.no_managed_workloads:
            results = await self._workloads.enable_all(ctx.snapshot)
            failures.extend(name for name, ok in results.items() if not ok)
            ctx = self._record(ctx, workloads_disabled=False)

        if ctx.services_stopped:
            try:
                await self._services.start_all(list(ctx.stopped_services) or None)
            except UpgradeError as e:
                logger.error(f"Could not start dependent services: {e.message}")
            ctx = self._record(ctx, services_stopped=False)
        return self._record(ctx, restoration_failures=tuple(failures))

    async def _cleanup(self, ctx: WorkflowContext) -> None:
        if ctx.staging_created:
            remove_staging_dir(Path(self.config.upgrade.staging_dir))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> WorkflowResult:
        """
        Run the whole workflow.

        Never raises for workflow failures; they are reported in the result.
        """
        target = parse_semantic_version(self.config.upgrade.target_version)
        ctx = self._record(WorkflowContext(target_version=target))
        logger.info(
            "Starting database upgrade",
            extra={
                "install_path": self.config.upgrade.install_path,
                "target_version": str(target),
                "restart": self.config.upgrade.restart,
            },
        )

        error: UpgradeError | None = None
        try:
            ctx = await self._check_privileges(ctx)
            ctx = await self._validate_path(ctx)
            ctx = await self._check_version(ctx)
            if ctx.current_version is not None and not should_upgrade(
                ctx.current_version, ctx.target_version
            ):
                ctx = self._advance(ctx, WorkflowState.DONE)
                logger.info("Installed version already meets the target; nothing to do")
                return self._result(ctx, status="up_to_date", message="Already up to date")

            ctx = await self._snapshot_workloads(ctx)
            ctx = await self._disable_workloads(ctx)
            ctx = await self._stop_services(ctx)
            ctx = await self._acquire_artifact(ctx)
            ctx = await self._install(ctx)
            ctx = await self._finish(ctx)
        except UpgradeError as e:
            error = e
        except Exception as e:
            logger.exception("Unexpected error during upgrade")
            error = InternalError(f"Unexpected error: {e}", details={"type": type(e).__name__})
        finally:
            if self._context is not None:
                await self._cleanup(self._context)

        if error is not None:
            return await self._abort(self._context or ctx, error)

        if ctx.restoration_failures:
            logger.warning(
                "Upgrade completed but some workloads must be re-enabled manually",
                extra={"workloads": list(ctx.restoration_failures)},
            )
        else:
            logger.info("Upgrade completed successfully")
        return self._result(ctx, status="upgraded", message="Upgrade completed")

    async def _abort(self, ctx: WorkflowContext, error: UpgradeError) -> WorkflowResult:
        logger.error(
            f"Upgrade aborted in state {ctx.state.value}: {error.message}",
            extra={"error_code": error.error_code, "error_details": error.details},
        )

        mutated = ctx.workloads_disabled or ctx.services_stopped
        if mutated and (self.config.upgrade.restore_on_abort or isinstance(error, InstallFailure)):
            ctx = await self._drop_continuation(ctx)
            ctx = await self._restore(ctx)
        elif mutated:
            logger.error(
                "Manual intervention required: re-enable workloads and start services",
                extra={
                    "workloads": ctx.snapshot_names if ctx.workloads_disabled else [],
                    "services": list(ctx.stopped_services),
                },
            )

        if ctx.state not in _TERMINAL_STATES:
            ctx = self._advance(ctx, WorkflowState.ABORTED)
        status = "failed" if isinstance(error, InstallFailure) else "aborted"
        return self._result(ctx, status=status, message=error.message, error=error)

    def _result(
        self,
        ctx: WorkflowContext,
        *,
        status: str,
        message: str,
        error: UpgradeError | None = None,
    ) -> WorkflowResult:
        if error is not None:
            exit_code = error.exit_code
        elif ctx.restoration_failures:
            exit_code = RestorationFailure.exit_code
        else:
            exit_code = EXIT_SUCCESS
        return WorkflowResult(
            status=status,
            exit_code=exit_code,
            final_state=ctx.state,
            message=message,
            current_version=str(ctx.current_version) if ctx.current_version else None,
            target_version=str(ctx.target_version),
            installer_exit_code=ctx.installer_exit_code,
            restarted=ctx.restarted,
            restoration_failures=list(ctx.restoration_failures),
            error=error.to_dict() if error is not None else None,
        )
