from __future__ import annotations

import textwrap
import unittest

from stagebuild.buildfile import expand_variables, format_buildfile, parse_buildfile
from stagebuild.errors import ManifestError
from stagebuild.manifest import SHELL, CopySources, CreateUser, InstallPackages, RunCommand, SetUser, SetWorkdir


SSH_CHAT_BUILDFILE = textwrap.dedent(
    """
    FROM rust:1.79 as builder

    WORKDIR /usr/src/ssh_chat
    COPY . .
    RUN cargo install --path .

    FROM debian:bullseye-slim

    RUN useradd -ms /bin/bash ssh_chat
    USER ssh_chat
    RUN apt-get update && apt-get install -y extra-runtime-dependencies && rm -rf /var/lib/apt/lists/*
    COPY --from=builder /usr/local/cargo/bin/myapp /usr/local/bin/ssh_chat

    CMD ["ssh_chat"]
    """
)


class ParseBuildfileTests(unittest.TestCase):
    def test_parses_two_stage_build_file(self) -> None:
        manifest = parse_buildfile(SSH_CHAT_BUILDFILE, source="Dockerfile")

        builder, runtime = manifest.stages
        self.assertEqual((builder.name, builder.base), ("builder", "rust:1.79"))
        self.assertEqual(
            builder.operations,
            (
                SetWorkdir("/usr/src/ssh_chat"),
                CopySources(sources=(".",), dest="."),
                RunCommand(argv=(*SHELL, "cargo install --path .")),
            ),
        )

        self.assertIsNone(runtime.name)
        self.assertEqual(runtime.base, "debian:bullseye-slim")
        self.assertEqual(
            runtime.operations,
            (
                CreateUser(name="ssh_chat", shell="/bin/bash", home=True),
                SetUser("ssh_chat"),
                InstallPackages(packages=("extra-runtime-dependencies",), cleanup=True),
                CopySources(
                    sources=("/usr/local/cargo/bin/myapp",),
                    dest="/usr/local/bin/ssh_chat",
                    from_stage="builder",
                ),
            ),
        )
        self.assertEqual(runtime.entrypoint, ("ssh_chat",))

    def test_entrypoint_and_cmd_are_combined(self) -> None:
        manifest = parse_buildfile(
            textwrap.dedent(
                """
                FROM scratch
                ENTRYPOINT ["/usr/local/bin/svc"]
                CMD ["--port", "2222"]
                """
            )
        )
        self.assertEqual(manifest.final_stage.entrypoint, ("/usr/local/bin/svc", "--port", "2222"))

    def test_shell_form_cmd(self) -> None:
        manifest = parse_buildfile("FROM scratch\nCMD svc --verbose\n")
        self.assertEqual(manifest.final_stage.entrypoint, (*SHELL, "svc --verbose"))

    def test_apk_no_cache_counts_as_cleanup(self) -> None:
        manifest = parse_buildfile("FROM alpine:3.20\nRUN apk add --no-cache ca-certificates tzdata\n")
        self.assertEqual(
            manifest.final_stage.operations,
            (InstallPackages(packages=("ca-certificates", "tzdata"), cleanup=True),),
        )

    def test_install_without_cleanup(self) -> None:
        manifest = parse_buildfile("FROM debian\nRUN apt-get update && apt-get install -y curl\n")
        self.assertEqual(manifest.final_stage.operations, (InstallPackages(packages=("curl",), cleanup=False),))

    def test_complex_commands_stay_opaque(self) -> None:
        text = textwrap.dedent(
            """
            FROM debian
            RUN apt-get update && apt-get install -y curl | tee /log
            RUN useradd -u 2000 svc
            RUN ["make", "install"]
            """
        )
        operations = parse_buildfile(text).final_stage.operations
        self.assertEqual(operations[0], RunCommand(argv=(*SHELL, "apt-get update && apt-get install -y curl | tee /log")))
        self.assertEqual(operations[1], RunCommand(argv=(*SHELL, "useradd -u 2000 svc")))
        self.assertEqual(operations[2], RunCommand(argv=("make", "install")))

    def test_line_continuations_and_comments(self) -> None:
        text = textwrap.dedent(
            """
            # builder
            FROM debian
            RUN apt-get update \\
                # pin nothing
                && apt-get install -y \\
                   curl git \\
                && rm -rf /var/lib/apt/lists/*
            """
        )
        operations = parse_buildfile(text).final_stage.operations
        self.assertEqual(operations, (InstallPackages(packages=("curl", "git"), cleanup=True),))

    def test_arg_defaults_and_overrides(self) -> None:
        text = textwrap.dedent(
            """
            ARG RUST_VERSION=1.79
            ARG APP=svc
            FROM rust:${RUST_VERSION} AS builder
            RUN cargo build --bin $APP
            FROM scratch
            COPY --from=builder /src/target/release/${APP} /usr/local/bin/$APP
            """
        )
        manifest = parse_buildfile(text, args={"RUST_VERSION": "1.80"})
        self.assertEqual(manifest.stages[0].base, "rust:1.80")
        self.assertEqual(manifest.stages[0].operations[0], RunCommand(argv=(*SHELL, "cargo build --bin svc")))
        self.assertEqual(manifest.stages[1].operations[0].dest, "/usr/local/bin/svc")
        self.assertEqual(manifest.args, {"RUST_VERSION": "1.80", "APP": "svc"})

    def test_unsupported_instruction_reports_line(self) -> None:
        with self.assertRaises(ManifestError) as ctx:
            parse_buildfile("FROM debian\n\nEXPOSE 22\n", source="Dockerfile")
        self.assertEqual(ctx.exception.line, 3)
        self.assertIn("Dockerfile:3", str(ctx.exception))

    def test_instruction_before_from(self) -> None:
        with self.assertRaises(ManifestError):
            parse_buildfile("RUN true\nFROM debian\n")

    def test_no_from(self) -> None:
        with self.assertRaises(ManifestError):
            parse_buildfile("# empty\n")


class FormatBuildfileTests(unittest.TestCase):
    def test_round_trips_through_parser(self) -> None:
        manifest = parse_buildfile(SSH_CHAT_BUILDFILE)
        rendered = format_buildfile(manifest)

        self.assertIn("FROM rust:1.79 AS builder", rendered)
        self.assertIn("RUN useradd -ms /bin/bash ssh_chat", rendered)
        self.assertIn('ENTRYPOINT ["ssh_chat"]', rendered)
        self.assertEqual(parse_buildfile(rendered).stages, manifest.stages)


class ExpandVariablesTests(unittest.TestCase):
    def test_unknown_names_are_kept(self) -> None:
        self.assertEqual(expand_variables("$A-${B}-$HOME", {"A": "1", "B": "2"}), "1-2-$HOME")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
