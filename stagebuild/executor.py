"""Run one stage's operations against a chain of immutable snapshots."""
from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence
import posixpath
import tempfile

from .backends import CommandBackend, CommandRequest
from .cache import LayerCache
from .console import Console
from .context import BuildContext
from .errors import BuildError, CommandFailed, LayerError, PathNotFound, PermissionDenied, UnknownUser
from .manifest import (
    CopySources,
    CreateUser,
    CrossStageReference,
    InstallPackages,
    Operation,
    RunCommand,
    SetUser,
    SetWorkdir,
    Stage,
)
from .packages import PackageManagerRegistry
from .promoter import Artifact, ArtifactPromoter
from .snapshot import Entry, Snapshot, absolute, normalize_path
from .users import ROOT_USER, add_user, is_privileged, user_exists

USERADD_EXISTS = 9
"""Exit status ``useradd`` reports for an account that already exists."""


@dataclass(frozen=True, slots=True)
class PrivilegeState:
    user: str = ROOT_USER
    privileged: bool = True


@dataclass(frozen=True, slots=True)
class StageState:
    snapshot: Snapshot
    privilege: PrivilegeState = PrivilegeState()
    workdir: str = "/"


@dataclass(frozen=True, slots=True)
class StageResult:
    stage: Stage
    snapshot: Snapshot
    user: str
    workdir: str
    entrypoint: tuple[str, ...] | None
    layers: tuple[str, ...] = ()


class StageExecutor:
    """Apply a stage's operations in order, one new snapshot per operation.

    Every command runs under the user in effect at that point of the stage.
    A failure is annotated with the stage and operation index and aborts the
    stage; nothing produced so far escapes.
    """

    def __init__(
        self,
        backend: CommandBackend,
        context: BuildContext,
        package_managers: PackageManagerRegistry | None = None,
        *,
        cache: LayerCache | None = None,
        console: Console | None = None,
        default_package_manager: str = "apt",
    ) -> None:
        self._backend = backend
        self._context = context
        self._package_managers = package_managers or PackageManagerRegistry.with_builtins()
        self._cache = cache
        self._console = console or Console()
        self._default_package_manager = default_package_manager

    def execute(
        self,
        stage: Stage,
        base: Snapshot,
        *,
        completed: Mapping[str, Snapshot],
        promoter: ArtifactPromoter,
        package_manager: str | None = None,
    ) -> StageResult:
        state = StageState(snapshot=base)
        layers: List[str] = []
        total = len(stage.operations)
        for position, operation in enumerate(stage.operations):
            self._console.info(f"[{stage.label} {position + 1}/{total}] {operation.describe()}")
            try:
                state = self._apply(
                    stage,
                    operation,
                    state,
                    completed=completed,
                    promoter=promoter,
                    package_manager=package_manager,
                )
            except BuildError as exc:
                raise exc.locate(stage.label, position, operation.kind)
            layers.append(state.snapshot.digest)
            self._console.debug(f"  -> {state.snapshot.digest}")

        return StageResult(
            stage=stage,
            snapshot=state.snapshot,
            user=state.privilege.user,
            workdir=state.workdir,
            entrypoint=stage.entrypoint,
            layers=tuple(layers),
        )

    def _apply(
        self,
        stage: Stage,
        operation: Operation,
        state: StageState,
        *,
        completed: Mapping[str, Snapshot],
        promoter: ArtifactPromoter,
        package_manager: str | None,
    ) -> StageState:
        if isinstance(operation, SetWorkdir):
            return replace(state, workdir=absolute(normalize_path(operation.path, state.workdir)))
        if isinstance(operation, CopySources):
            return self._copy(stage, operation, state, completed=completed, promoter=promoter)
        if isinstance(operation, RunCommand):
            return self._run(operation, state)
        if isinstance(operation, InstallPackages):
            return self._install(operation, state, package_manager)
        if isinstance(operation, CreateUser):
            return self._create_user(operation, state)
        if isinstance(operation, SetUser):
            return self._set_user(operation, state)
        raise TypeError(f"Unsupported operation {operation!r}")

    def _copy(
        self,
        stage: Stage,
        operation: CopySources,
        state: StageState,
        *,
        completed: Mapping[str, Snapshot],
        promoter: ArtifactPromoter,
    ) -> StageState:
        artifacts: List[Artifact] = []
        for source in operation.sources:
            if operation.from_stage is not None:
                ref = CrossStageReference(
                    source_stage=operation.from_stage,
                    source_path=source,
                    dest_stage=stage.key,
                    dest_path=operation.dest,
                )
                try:
                    artifacts.append(promoter.promote(ref, completed))
                except PathNotFound:
                    # commands were not run, so their outputs do not exist yet
                    if not self._console.dry_run:
                        raise
                    self._console.dry(f"Would copy {source} from stage {operation.from_stage} to {operation.dest}")
            else:
                artifacts.extend(self._context.collect(source))

        snapshot = state.snapshot
        dest = _copy_target(snapshot, normalize_path(operation.dest, state.workdir))
        into_directory = (
            operation.dest.endswith("/")
            or len(artifacts) > 1
            or snapshot.is_dir(dest)
        )
        updates: Dict[str, Entry] = {}
        for artifact in artifacts:
            if artifact.is_dir:
                if dest and not snapshot.is_dir(dest):
                    updates[dest] = artifact.entries[""].chown(ROOT_USER)
                for relative, entry in artifact.entries.items():
                    if not relative:
                        continue
                    path = posixpath.join(dest, relative)
                    target = _copy_target(snapshot, path, follow=entry.is_dir)
                    if entry.is_dir and target != path and snapshot.is_dir(target):
                        continue
                    updates[target] = entry.chown(ROOT_USER)
            else:
                target = posixpath.join(dest, artifact.name) if into_directory or not dest else dest
                updates[_copy_target(snapshot, target, follow=False)] = artifact.entries[""].chown(ROOT_USER)
        return replace(state, snapshot=snapshot.with_entries(updates))

    def _run(self, operation: RunCommand, state: StageState) -> StageState:
        if operation.privileged and not state.privilege.privileged:
            raise PermissionDenied("privileged RunCommand", state.privilege.user)

        snapshot = self._cached(
            operation,
            state,
            extra={"backend": self._backend.name},
            produce=lambda: self._run_commands(state, lambda root: [operation.argv], label=operation.describe()),
        )
        return replace(state, snapshot=snapshot)

    def _install(self, operation: InstallPackages, state: StageState, package_manager: str | None) -> StageState:
        if not state.privilege.privileged:
            raise PermissionDenied("InstallPackages", state.privilege.user)
        if not operation.packages:
            self._console.debug("  nothing to install")
            return state

        definition = self._package_managers.require(package_manager or self._default_package_manager)
        isolated = self._backend.isolated

        def commands(root: Path) -> List[List[str]]:
            # outside a chroot the package manager must be pointed at the image tree
            argvs = definition.commands(operation.packages)
            if isolated:
                return argvs
            return [definition.rooted(argv, root) for argv in argvs]

        def produce() -> Snapshot:
            snapshot = self._run_commands(
                state,
                commands,
                label=operation.describe(),
                environment=definition.environment,
            )
            if operation.cleanup:
                for path in definition.cache_paths:
                    snapshot = snapshot.without(path, keep_root=True)
            return snapshot

        snapshot = self._cached(
            operation,
            state,
            extra={
                "backend": self._backend.name,
                "isolated": isolated,
                "package_manager": definition.fingerprint(),
            },
            produce=produce,
        )
        return replace(state, snapshot=snapshot)

    def _create_user(self, operation: CreateUser, state: StageState) -> StageState:
        if not state.privilege.privileged:
            raise PermissionDenied("CreateUser", state.privilege.user)
        try:
            snapshot = add_user(
                state.snapshot,
                operation.name,
                shell=operation.shell,
                create_home=operation.home,
            )
        except ValueError as exc:
            raise CommandFailed(USERADD_EXISTS, ["useradd", operation.name]) from exc
        return replace(state, snapshot=snapshot)

    def _set_user(self, operation: SetUser, state: StageState) -> StageState:
        if not user_exists(state.snapshot, operation.name):
            raise UnknownUser(operation.name.split(":", 1)[0])
        privilege = PrivilegeState(
            user=operation.name,
            privileged=is_privileged(state.snapshot, operation.name),
        )
        return replace(state, privilege=privilege)

    def _cached(
        self,
        operation: Operation,
        state: StageState,
        *,
        extra: Mapping[str, object],
        produce: Callable[[], Snapshot],
    ) -> Snapshot:
        if self._cache is None:
            return produce()
        key = self._cache.key(
            state.snapshot.digest,
            operation,
            user=state.privilege.user,
            workdir=state.workdir,
            extra=extra,
        )
        cached = self._cache.get(key)
        if cached is not None:
            self._console.info(f"  using cached layer {key[:12]}")
            return cached
        snapshot = produce()
        self._cache.put(key, snapshot)
        return snapshot

    def _run_commands(
        self,
        state: StageState,
        commands: Callable[[Path], Sequence[Sequence[str]]],
        *,
        label: str,
        environment: Mapping[str, str] | None = None,
    ) -> Snapshot:
        """Run ``commands(root)`` against the snapshot written out at ``root``."""

        owner = state.privilege.user.split(":", 1)[0]
        with tempfile.TemporaryDirectory(prefix="stagebuild-") as temp_dir:
            root = Path(temp_dir) / "rootfs"
            try:
                state.snapshot.materialize(root)
            except (OSError, ValueError) as exc:
                raise LayerError("materialize", exc) from exc
            for argv in commands(root):
                request = CommandRequest(
                    argv=tuple(argv),
                    root=root,
                    workdir=state.workdir,
                    user=state.privilege.user,
                    environment=dict(environment or {}),
                    label=label,
                )
                result = self._backend.run(request)
                if not result.succeeded:
                    raise CommandFailed(result.returncode, argv, result=result)
            try:
                return Snapshot.capture(root, previous=state.snapshot, owner=owner)
            except OSError as exc:
                raise LayerError("capture", exc) from exc


def _copy_target(snapshot: Snapshot, path: str, *, follow: bool = True) -> str:
    """Return where ``path`` lands once the image's own symlinks are followed.

    A final component that links to a directory is followed only when
    ``follow`` is set.
    """

    try:
        resolved = snapshot.resolve(path)
        if follow:
            linked = snapshot.resolve(resolved, follow=True)
            if snapshot.is_dir(linked):
                return linked
    except ValueError as exc:
        raise LayerError("resolve", exc) from exc
    return resolved


__all__ = ["PrivilegeState", "StageExecutor", "StageResult", "StageState"]
