"""Reconcile a ``Terraform`` resource into an applied workspace.

One pass runs a strict chain of stages for a single resource::

    load -> parse -> resolve -> render -> build -> toolchain -> init -> apply

Each stage raises a :class:`~machineshop._errors.MachineShopError` subclass
on failure. The first failure stops the chain and is reported as a
``Failed`` status naming the stage; a pass that reaches the end reports
``Done``. Passes for the same resource are serialized; passes for different
resources may run concurrently.

Examples
--------
>>> store = FileResourceStore(Path("manifests"))
>>> reconciler = Reconciler(store, ReconcilerConfig(template_dir=Path("terraform")))
>>> reconciler.reconcile(ReconcileEvent(ResourceIdentity("demo"))).phase
<ReconcilePhase.DONE: 'Done'>
"""

from __future__ import annotations

import enum
import logging
from collections import abc as cabc
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from machineshop._credentials import discover_credential, obtain_token
from machineshop._errors import (
    MachineShopError,
    PassCancelledError,
    SecretResolutionError,
    StatusReportError,
)
from machineshop._locks import KeyedLock
from machineshop._models import (
    ModuleSpec,
    ReconcileEvent,
    ReconcilePhase,
    ReconcileStatus,
    ResourceIdentity,
    ToolchainHandle,
    Workspace,
)
from machineshop._parameters import parse_parameters, validate_parameters
from machineshop._resource_store import ResourceStore
from machineshop._secret_references import (
    SecretFetcher,
    has_secret_references,
    resolve_secret_parameters,
)
from machineshop._templates import Delimiters, render_module_call
from machineshop._terraform import (
    DEFAULT_APPLY_TIMEOUT,
    DEFAULT_INIT_TIMEOUT,
    TerraformExecution,
)
from machineshop._toolchain import (
    DEFAULT_INSTALL_TIMEOUT,
    DEFAULT_RELEASES_URL,
    ToolchainInstaller,
    ToolchainVersion,
)
from machineshop._vault_commands import DEFAULT_VAULT_TIMEOUT
from machineshop._workspace import build_workspace

logger = logging.getLogger(__name__)

type ExecutionFactory = Callable[[ToolchainHandle, Workspace, Path], TerraformExecution]


class PipelineStage(enum.StrEnum):
    """Stages of a reconciliation pass, in execution order."""

    LOAD = "load"
    PARSE = "parse"
    RESOLVE = "resolve"
    RENDER = "render"
    BUILD = "build"
    TOOLCHAIN = "toolchain"
    INIT = "init"
    APPLY = "apply"
    REPORT = "report"


@dataclass(frozen=True, slots=True)
class ReconcilerConfig:
    """Filesystem layout, endpoints and timeouts for reconciliation passes."""

    workspace_root: Path = Path("/tmp/tf")
    template_dir: Path = Path("terraform")
    toolchain_dir: Path = Path("/tmp/machineshop/toolchains")
    log_dir: Path = Path("/tmp/machineShop")
    releases_url: str = DEFAULT_RELEASES_URL
    delimiters: Delimiters = field(default_factory=Delimiters)
    vault_timeout: float = DEFAULT_VAULT_TIMEOUT
    install_timeout: float = DEFAULT_INSTALL_TIMEOUT
    init_timeout: float = DEFAULT_INIT_TIMEOUT
    apply_timeout: float = DEFAULT_APPLY_TIMEOUT


@dataclass(slots=True)
class _PassProgress:
    event: ReconcileEvent
    stage: PipelineStage = PipelineStage.LOAD

    def enter(self, stage: PipelineStage) -> None:
        if self.event.cancelled.is_set():
            msg = f"reconciliation of {self.event.identity} cancelled before {stage}"
            raise PassCancelledError(msg)
        self.stage = stage
        logger.debug("%s: entering stage %s", self.event.identity, stage)


class Reconciler:
    """Run reconciliation passes against a resource store.

    Parameters
    ----------
    store
        Collaborator supplying specs and receiving statuses.
    config
        Layout, endpoint and timeout configuration.
    installer
        Toolchain installer; one sharing ``config.toolchain_dir`` is built
        when omitted.
    env
        Environment mapping used for Vault credential discovery. Defaults to
        ``os.environ`` read at each pass.
    secret_fetcher
        Secret lookup override, mainly for tests.
    execution_factory
        Builds the :class:`TerraformExecution` for a pass.
    """

    def __init__(
        self,
        store: ResourceStore,
        config: ReconcilerConfig | None = None,
        *,
        installer: ToolchainInstaller | None = None,
        env: cabc.Mapping[str, str] | None = None,
        secret_fetcher: SecretFetcher | None = None,
        execution_factory: ExecutionFactory | None = None,
    ) -> None:
        self.store = store
        self.config = config or ReconcilerConfig()
        self.installer = installer or ToolchainInstaller(
            install_dir=self.config.toolchain_dir,
            releases_url=self.config.releases_url,
            timeout=self.config.install_timeout,
        )
        self._env = env
        self._secret_fetcher = secret_fetcher
        self._execution_factory = execution_factory or self._default_execution
        self._run_locks = KeyedLock()

    def _default_execution(
        self,
        toolchain: ToolchainHandle,
        workspace: Workspace,
        log_path: Path,
    ) -> TerraformExecution:
        return TerraformExecution(
            toolchain,
            workspace,
            log_path,
            init_timeout=self.config.init_timeout,
            apply_timeout=self.config.apply_timeout,
        )

    def reconcile(self, event: ReconcileEvent) -> ReconcileStatus:
        """Run one pass for the event's resource and report its outcome.

        Returns
        -------
        ReconcileStatus
            ``NotFound`` when the resource no longer exists (nothing is
            reported), otherwise the ``Done`` or ``Failed`` status that was
            written to the store. A status the store rejects is replaced by a
            ``Failed`` outcome at the ``report`` stage.
        """
        identity = event.identity
        with self._run_locks.hold(identity.key):
            logger.info("Reconciling %s", identity)
            progress = _PassProgress(event=event)
            try:
                progress.enter(PipelineStage.LOAD)
                spec = self.store.get(identity)
                if spec is None:
                    logger.info("Terraform resource %s not found; nothing to do", identity)
                    return ReconcileStatus(
                        ReconcilePhase.NOT_FOUND,
                        f"resource {identity} not found",
                    )
                self._run_pass(identity, spec, progress)
            except MachineShopError as exc:
                logger.error(
                    "Reconciliation of %s failed at stage %s: %s",
                    identity,
                    progress.stage,
                    exc,
                )
                status = ReconcileStatus(
                    ReconcilePhase.FAILED,
                    str(exc),
                    stage=str(progress.stage),
                )
            else:
                logger.info("Reconciliation of %s done", identity)
                status = ReconcileStatus(
                    ReconcilePhase.DONE,
                    f"terraform {spec.terraform_version} applied",
                )
            return self._report(identity, status)

    def _report(self, identity: ResourceIdentity, status: ReconcileStatus) -> ReconcileStatus:
        try:
            self.store.report_status(identity, status)
        except StatusReportError as exc:
            logger.error("Status for %s was not recorded: %s", identity, exc)
            return ReconcileStatus(
                ReconcilePhase.FAILED,
                f"{status.phase} outcome not recorded: {exc}",
                stage=str(PipelineStage.REPORT),
            )
        return status

    def _run_pass(
        self,
        identity: ResourceIdentity,
        spec: ModuleSpec,
        progress: _PassProgress,
    ) -> None:
        progress.enter(PipelineStage.PARSE)
        version = ToolchainVersion.parse(spec.terraform_version)
        module_parameters = parse_parameters(spec.module)
        validate_parameters(spec.backend)
        validate_parameters(spec.secrets)

        progress.enter(PipelineStage.RESOLVE)
        backend, secrets = self._resolve_secrets(spec)

        progress.enter(PipelineStage.RENDER)
        module_call = render_module_call(
            self.config.template_dir,
            spec.template,
            module_parameters,
            self.config.delimiters,
        )

        progress.enter(PipelineStage.BUILD)
        workspace = build_workspace(
            self.config.workspace_root,
            identity,
            module_call,
            spec.variables,
        )
        logger.info("Workspace for %s written to %s", identity, workspace.directory)

        progress.enter(PipelineStage.TOOLCHAIN)
        toolchain = self.installer.install(str(version))

        progress.enter(PipelineStage.INIT)
        execution = self._execution_factory(
            toolchain,
            workspace,
            identity.log_file(self.config.log_dir),
        )
        execution.init(backend)

        progress.enter(PipelineStage.APPLY)
        execution.apply(secrets)

    def _resolve_secrets(self, spec: ModuleSpec) -> tuple[list[str], list[str]]:
        if not has_secret_references([*spec.backend, *spec.secrets]):
            return list(spec.backend), list(spec.secrets)

        credential = discover_credential(self._env)
        logger.info("Vault credentials discovered: %s", credential.kind)
        credential = obtain_token(credential, timeout=self.config.vault_timeout)

        resolved: list[list[str]] = []
        failed_keys: list[str] = []
        for entries in (spec.backend, spec.secrets):
            try:
                resolved.append(
                    resolve_secret_parameters(
                        entries,
                        credential,
                        fetch=self._secret_fetcher,
                        timeout=self.config.vault_timeout,
                    )
                )
            except SecretResolutionError as exc:
                failed_keys.extend(exc.keys)
        if failed_keys:
            msg = f"failed to resolve secret reference(s) for: {', '.join(failed_keys)}"
            raise SecretResolutionError(msg, keys=failed_keys)
        backend, secrets = resolved
        return backend, secrets


def dispatch_events(
    reconciler: Reconciler,
    events: Iterable[ReconcileEvent],
    *,
    max_workers: int = 4,
) -> list[tuple[ResourceIdentity, ReconcileStatus]]:
    """Reconcile ``events`` concurrently and return outcomes as they finish.

    Events for the same identity still run one at a time through the
    reconciler's run-lock. If collection is interrupted (for example by
    ``KeyboardInterrupt``), every event is flagged as cancelled so running
    passes stop at their next stage boundary.
    """
    pending = list(events)
    outcomes: list[tuple[ResourceIdentity, ReconcileStatus]] = []
    with ThreadPoolExecutor(
        max_workers=max(1, max_workers),
        thread_name_prefix="reconcile",
    ) as pool:
        futures = {pool.submit(reconciler.reconcile, event): event for event in pending}
        try:
            for future in as_completed(futures):
                outcomes.append((futures[future].identity, future.result()))
        except BaseException:
            for event in pending:
                event.cancelled.set()
            raise
    return outcomes


def events_for(identities: Sequence[ResourceIdentity]) -> list[ReconcileEvent]:
    """Wrap identities in fresh, uncancelled events."""
    return [ReconcileEvent(identity=identity) for identity in identities]


__all__ = [
    "PipelineStage",
    "Reconciler",
    "ReconcilerConfig",
    "dispatch_events",
    "events_for",
]
