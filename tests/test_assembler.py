from __future__ import annotations

from pathlib import Path
import json
import tempfile
import unittest
from unittest.mock import MagicMock, patch

from core.archive import ArchiveManager
from core.command_runner import RecordedCommand, RecordingCommandRunner
from stagebuild.assembler import ImageAssembler
from stagebuild.backends import HostCommandBackend
from stagebuild.console import Console
from stagebuild.context import BuildContext
from stagebuild.errors import CommandFailed, ImageNotFound, PermissionDenied, ValidationFailed
from stagebuild.executor import StageExecutor
from stagebuild.export import ImageExporter
from stagebuild.images import BaseImageResolver
from stagebuild.manifest import (
    CopySources,
    CreateUser,
    InstallPackages,
    Manifest,
    RunCommand,
    SetUser,
    Stage,
)

PASSWD = "root:x:0:0:root:/root:/bin/sh\n"


def fake_compile(record: RecordedCommand) -> int:
    root = Path(record.env["STAGE_ROOT"])
    source = root / record.command[1].lstrip("/") / "main.c"
    output = root / record.command[3].lstrip("/")
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(b"svc:" + source.read_bytes())
    output.chmod(0o755)
    return 0


def fake_apt(record: RecordedCommand) -> int:
    roots = [argument[len("Dir="):] for argument in record.command if argument.startswith("Dir=")]
    root = Path(roots[0] if roots else record.env["STAGE_ROOT"])
    if record.command[-1] == "update":
        (root / "var/lib/apt/lists").mkdir(parents=True, exist_ok=True)
        (root / "var/lib/apt/lists/InRelease").write_text("index")
        return 0
    (root / "etc/ssl/certs").mkdir(parents=True, exist_ok=True)
    (root / "etc/ssl/certs/ca-certificates.crt").write_text("certs")
    return 0


def scenario_manifest(*, misordered: bool = False) -> Manifest:
    runtime_operations = [
        CreateUser(name="svc"),
        InstallPackages(packages=("ca-certificates",), cleanup=True),
        SetUser("svc"),
        CopySources(sources=("/out/svc",), dest="/usr/local/bin/svc", from_stage="builder"),
    ]
    if misordered:
        runtime_operations[1], runtime_operations[2] = runtime_operations[2], runtime_operations[1]
    return Manifest(
        stages=(
            Stage(
                base="toolchain:1.0",
                name="builder",
                operations=(
                    CopySources(sources=(".",), dest="/src"),
                    RunCommand(argv=("compile", "/src", "-o", "/out/svc")),
                ),
            ),
            Stage(
                base="runtime:1.0",
                name=None,
                index=1,
                operations=tuple(runtime_operations),
                entrypoint=("/usr/local/bin/svc",),
            ),
        )
    )


class ImageAssemblerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.context_dir = root / "context"
        self.context_dir.mkdir()
        (self.context_dir / "main.c").write_text("int main(void) { return 0; }\n")

        self.images_dir = root / "images"
        toolchain = self.images_dir / "toolchain" / "1.0"
        (toolchain / "rootfs" / "usr" / "bin").mkdir(parents=True)
        (toolchain / "rootfs" / "usr" / "bin" / "compile").write_text("#!/bin/sh\n")
        (toolchain / "rootfs" / "etc").mkdir()
        (toolchain / "rootfs" / "etc" / "passwd").write_text(PASSWD)
        runtime = self.images_dir / "runtime" / "1.0"
        (runtime / "rootfs" / "etc").mkdir(parents=True)
        (runtime / "rootfs" / "etc" / "passwd").write_text(PASSWD)
        (runtime / "image.toml").write_text('package_manager = "apt"\n')

        self.console = MagicMock(spec=Console)
        self.console.dry_run = False

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _assembler(self) -> tuple[ImageAssembler, StageExecutor, RecordingCommandRunner]:
        runner = RecordingCommandRunner({"compile": fake_compile, "apt-get": fake_apt})
        executor = StageExecutor(HostCommandBackend(runner), BuildContext(self.context_dir), console=self.console)
        resolver = BaseImageResolver(self.images_dir, console=self.console)
        return ImageAssembler(executor, resolver, console=self.console), executor, runner

    def test_builder_runtime_scenario(self) -> None:
        assembler, _, _ = self._assembler()
        image = assembler.build(scenario_manifest(), tag="svc:latest")

        self.assertEqual(image.entrypoint, ("/usr/local/bin/svc",))
        self.assertEqual(image.user, "svc")
        self.assertEqual(image.tag, "svc:latest")
        self.assertEqual(image.snapshot.read("/usr/local/bin/svc"), b"svc:int main(void) { return 0; }\n")
        self.assertEqual(image.snapshot.get("/usr/local/bin/svc").owner, "root")
        self.assertNotIn("usr/bin/compile", image.snapshot)
        self.assertNotIn("src/main.c", image.snapshot)
        self.assertIn("etc/ssl/certs/ca-certificates.crt", image.snapshot)
        self.assertNotIn("var/lib/apt/lists/InRelease", image.snapshot)
        self.assertEqual([key for key, _ in image.stages], ["builder", "1"])

    def test_misordered_privilege_drop_fails_at_install(self) -> None:
        assembler, _, runner = self._assembler()
        with self.assertRaises(PermissionDenied) as ctx:
            assembler.build(scenario_manifest(misordered=True))

        self.assertEqual(ctx.exception.stage, "#1")
        self.assertEqual(ctx.exception.operation, 2)
        self.assertEqual(ctx.exception.operation_name, "install")
        self.assertNotIn("apt-get", [record.command[0] for record in runner.commands])
        warnings = " ".join(call.args[0] for call in self.console.warn.call_args_list)
        self.assertIn("privileged-after-user-drop", warnings)

    def test_executor_invoked_once_per_stage_in_order(self) -> None:
        assembler, executor, _ = self._assembler()
        manifest = Manifest(
            stages=(
                Stage(base="scratch", name="a"),
                Stage(base="toolchain:1.0", name="b", index=1),
                Stage(base="runtime:1.0", name="c", index=2),
            )
        )
        with patch.object(executor, "execute", wraps=executor.execute) as spy:
            assembler.build(manifest)

        self.assertEqual(spy.call_count, 3)
        self.assertEqual([call.args[0].name for call in spy.call_args_list], ["a", "b", "c"])

    def test_forward_reference_fails_before_execution(self) -> None:
        assembler, executor, _ = self._assembler()
        manifest = Manifest(
            stages=(
                Stage(
                    base="runtime:1.0",
                    operations=(CopySources(sources=("/out/svc",), dest="/svc", from_stage="builder"),),
                ),
                Stage(base="toolchain:1.0", name="builder", index=1),
            )
        )
        with patch.object(executor, "execute", wraps=executor.execute) as spy:
            with self.assertRaises(ValidationFailed) as ctx:
                assembler.build(manifest)

        spy.assert_not_called()
        self.assertEqual([finding.code for finding in ctx.exception.findings], ["forward-reference"])

    def test_fails_fast_without_partial_image(self) -> None:
        assembler, executor, runner = self._assembler()
        runner.register("compile", lambda record: 2)
        with patch.object(executor, "execute", wraps=executor.execute) as spy:
            with self.assertRaises(CommandFailed) as ctx:
                assembler.build(scenario_manifest())

        self.assertEqual(spy.call_count, 1)
        self.assertEqual(ctx.exception.exit_code, 2)
        self.assertIn("stage 'builder', operation #1 (run)", str(ctx.exception))

    def test_rebuild_is_deterministic(self) -> None:
        first, _, _ = self._assembler()
        second, _, _ = self._assembler()
        one = first.build(scenario_manifest())
        two = second.build(scenario_manifest())

        self.assertEqual(one.digest, two.digest)
        self.assertEqual(one.entrypoint, two.entrypoint)
        self.assertEqual(one.user, two.user)
        self.assertEqual(one.config(), two.config())

    def test_only_final_entrypoint_is_kept(self) -> None:
        assembler, _, _ = self._assembler()
        manifest = Manifest(
            stages=(
                Stage(base="scratch", name="first", entrypoint=("/bin/sh",)),
                Stage(base="scratch", index=1),
            )
        )
        image = assembler.build(manifest)
        self.assertIsNone(image.entrypoint)
        self.assertEqual(image.user, "root")

    def test_unknown_base_image(self) -> None:
        assembler, executor, _ = self._assembler()
        manifest = Manifest(stages=(Stage(base="missing:1.0", name="x"),))
        with patch.object(executor, "execute") as spy:
            with self.assertRaises(ImageNotFound) as ctx:
                assembler.build(manifest)
        spy.assert_not_called()
        self.assertEqual(ctx.exception.stage, "'x'")

    def test_set_user_missing_from_base_is_an_error(self) -> None:
        assembler, _, _ = self._assembler()
        manifest = Manifest(stages=(Stage(base="runtime:1.0", operations=(SetUser("svc"),)),))
        with self.assertRaises(ValidationFailed) as ctx:
            assembler.build(manifest)
        self.assertEqual([finding.code for finding in ctx.exception.findings], ["unknown-user"])


class ImageExporterTests(unittest.TestCase):
    def test_exports_rootfs_and_config(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp)
            context_dir = root / "context"
            context_dir.mkdir()
            (context_dir / "svc").write_text("#!/bin/sh\necho hi\n")
            console = Console()
            executor = StageExecutor(HostCommandBackend(RecordingCommandRunner()), BuildContext(context_dir))
            assembler = ImageAssembler(executor, BaseImageResolver(root / "images"), console=console)
            image = assembler.build(
                Manifest(
                    stages=(
                        Stage(
                            base="scratch",
                            operations=(CopySources(sources=("svc",), dest="/usr/local/bin/svc"),),
                            entrypoint=("/usr/local/bin/svc",),
                        ),
                    )
                ),
                tag="svc:1",
            )

            rootfs, config_path = ImageExporter(console).export(image, root / "out")

            self.assertEqual(rootfs.name, "rootfs.tar.zst")
            config = json.loads(config_path.read_text())
            self.assertEqual(config["entrypoint"], ["/usr/local/bin/svc"])
            self.assertEqual(config["digest"], image.digest)
            self.assertEqual(config["rootfs"], "rootfs.tar.zst")
            members = {member.path: member for member in ArchiveManager(console).read_archive(rootfs)}
            self.assertEqual(members["usr/local/bin/svc"].data, b"#!/bin/sh\necho hi\n")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
