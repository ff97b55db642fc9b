from __future__ import annotations

import unittest

from core.template import TemplateError, TemplateResolver, extract_placeholders


class TemplateResolverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.context = {
            "args": {"RUST_VERSION": "1.79", "APP": "ssh_chat", "PORT": 2222},
        }
        self.resolver = TemplateResolver(self.context)

    def test_resolve_placeholder(self) -> None:
        result = self.resolver.resolve("rust:{{args.RUST_VERSION}}")
        self.assertEqual(result, "rust:1.79")

    def test_single_placeholder_keeps_raw_value(self) -> None:
        self.assertEqual(self.resolver.resolve("{{args.PORT}}"), 2222)
        self.assertEqual(self.resolver.resolve("port-{{args.PORT}}"), "port-2222")

    def test_resolves_nested_structures(self) -> None:
        value = {"copy": ["/out/{{args.APP}}"], "dest": ("/usr/local/bin/{{ args.APP }}",)}
        self.assertEqual(
            self.resolver.resolve(value),
            {"copy": ["/out/ssh_chat"], "dest": ("/usr/local/bin/ssh_chat",)},
        )

    def test_nested_variable_resolution(self) -> None:
        context = {"args": {"BASE": "debian", "IMAGE": "{{args.BASE}}:bullseye-slim"}}
        resolver = TemplateResolver(context)
        self.assertEqual(resolver.resolve("{{args.IMAGE}}"), "debian:bullseye-slim")

    def test_circular_reference_detected(self) -> None:
        resolver = TemplateResolver({"args": {"A": "{{args.B}}", "B": "{{args.A}}"}})
        with self.assertRaises(TemplateError) as ctx:
            resolver.resolve("{{args.A}}")
        self.assertIn("args.A -> args.B -> args.A", str(ctx.exception))

    def test_unknown_placeholder(self) -> None:
        with self.assertRaises(TemplateError) as ctx:
            self.resolver.resolve("{{args.MISSING}}")
        self.assertIn("{{args.MISSING}}", str(ctx.exception))

    def test_non_string_values_pass_through(self) -> None:
        self.assertIs(self.resolver.resolve(True), True)
        self.assertIsNone(self.resolver.resolve(None))


class ExtractPlaceholderTests(unittest.TestCase):
    def test_collects_from_nested_values(self) -> None:
        value = [{"run": "build {{args.A}}", "env": {"X": "{{ args.B }}"}}, ("{{args.A}}",), 3]
        self.assertEqual(extract_placeholders(value), {"args.A", "args.B"})


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
