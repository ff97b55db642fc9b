from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner


class SubprocessCommandRunnerTests(unittest.TestCase):
    def test_non_zero_exit_is_returned(self) -> None:
        result = SubprocessCommandRunner().run(["/bin/sh", "-c", "echo oops >&2; exit 3"])
        self.assertFalse(result.succeeded)
        self.assertEqual(result.returncode, 3)
        self.assertIn("oops", result.describe())

    def test_missing_program_maps_to_127(self) -> None:
        result = SubprocessCommandRunner().run(["definitely-not-a-real-program-xyz"])
        self.assertEqual(result.returncode, 127)

    def test_cwd_and_environment(self) -> None:
        with tempfile.TemporaryDirectory() as temp:
            result = SubprocessCommandRunner().run(
                ["/bin/sh", "-c", 'printf "%s" "$STAGE_USER" > who'],
                cwd=Path(temp),
                env={"STAGE_USER": "svc"},
            )
            self.assertTrue(result.succeeded)
            self.assertEqual((Path(temp) / "who").read_text(), "svc")


class RecordingCommandRunnerTests(unittest.TestCase):
    def test_records_and_formats(self) -> None:
        runner = RecordingCommandRunner()
        runner.run(["apt-get", "update"], cwd=Path("/tmp/root"), note="INSTALL curl")
        runner.run(["cargo", "install", "--path", "."])

        commands = list(runner.iter_commands())
        self.assertEqual([record.command[0] for record in commands], ["apt-get", "cargo"])
        lines = list(runner.iter_formatted(workspace=Path("/work")))
        self.assertEqual(lines[0], "[dry-run] INSTALL curl (cwd=/tmp/root) apt-get update")
        self.assertEqual(lines[1], "[dry-run] (cwd=/work) cargo install --path .")

    def test_handler_status_becomes_exit_code(self) -> None:
        seen: list[list[str]] = []

        def handler(record) -> int:
            seen.append(record.command)
            return 101

        runner = RecordingCommandRunner({"cargo": handler})
        result = runner.run(["cargo", "build"])
        self.assertEqual(result.returncode, 101)
        self.assertEqual(seen, [["cargo", "build"]])

        runner.register("true", lambda record: None)
        self.assertTrue(runner.run(["true"]).succeeded)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
