from __future__ import annotations

from pathlib import Path
import os
import tempfile
import unittest

from stagebuild.snapshot import Entry, Snapshot, normalize_path
from stagebuild.users import FIRST_UID, add_user, is_privileged, read_passwd, user_exists


class NormalizePathTests(unittest.TestCase):
    def test_relative_paths_resolve_against_workdir(self) -> None:
        self.assertEqual(normalize_path("bin/svc", "/usr/local"), "usr/local/bin/svc")
        self.assertEqual(normalize_path("/etc/passwd", "/usr"), "etc/passwd")
        self.assertEqual(normalize_path(".", "/src"), "src")

    def test_root_and_escapes(self) -> None:
        self.assertEqual(normalize_path("/"), "")
        self.assertEqual(normalize_path("../../etc", "/src"), "etc")


class SnapshotTests(unittest.TestCase):
    def test_with_entries_never_mutates_original(self) -> None:
        base = Snapshot({"etc/hostname": Entry.file(b"base\n")})
        changed = base.with_entries({"etc/hostname": Entry.file(b"changed\n")})

        self.assertEqual(base.read("/etc/hostname"), b"base\n")
        self.assertEqual(changed.read("/etc/hostname"), b"changed\n")
        self.assertNotEqual(base.digest, changed.digest)

    def test_missing_parents_are_created(self) -> None:
        snapshot = Snapshot({"usr/local/bin/svc": Entry.file(b"x", mode=0o755)})
        self.assertTrue(snapshot.is_dir("usr"))
        self.assertTrue(snapshot.is_dir("/usr/local/bin"))
        self.assertEqual(list(snapshot), ["usr", "usr/local", "usr/local/bin", "usr/local/bin/svc"])

    def test_file_replacing_directory_drops_subtree(self) -> None:
        base = Snapshot({"opt/app/lib/a.so": Entry.file(b"a")})
        replaced = base.with_entries({"opt/app": Entry.file(b"now a file")})
        self.assertNotIn("opt/app/lib/a.so", replaced)
        self.assertEqual(replaced.read("opt/app"), b"now a file")

    def test_without_keep_root(self) -> None:
        base = Snapshot({"var/lib/apt/lists/index": Entry.file(b"idx")})
        purged = base.without("/var/lib/apt/lists", keep_root=True)
        self.assertTrue(purged.is_dir("var/lib/apt/lists"))
        self.assertNotIn("var/lib/apt/lists/index", purged)
        self.assertNotIn("var/lib/apt/lists", base.without("var/lib/apt/lists"))

    def test_digest_depends_on_metadata_not_insertion_order(self) -> None:
        first = Snapshot({"a": Entry.file(b"1"), "b": Entry.file(b"2")})
        second = Snapshot({"b": Entry.file(b"2"), "a": Entry.file(b"1")})
        self.assertEqual(first.digest, second.digest)
        self.assertEqual(first, second)

        chmodded = first.with_entries({"a": Entry.file(b"1", mode=0o755)})
        chowned = first.with_entries({"a": Entry.file(b"1", owner="svc")})
        self.assertNotEqual(first.digest, chmodded.digest)
        self.assertNotEqual(first.digest, chowned.digest)

    def test_subtree_keys_are_relative(self) -> None:
        snapshot = Snapshot({"out/svc": Entry.file(b"bin"), "out/doc/README": Entry.file(b"doc")})
        subtree = snapshot.subtree("/out")
        self.assertEqual(sorted(subtree), ["", "doc", "doc/README", "svc"])
        self.assertTrue(subtree[""].is_dir)
        self.assertEqual(snapshot.subtree("/missing"), {})

    def test_read_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            Snapshot.empty().read("/nope")

    def test_materialize_and_capture_round_trip(self) -> None:
        snapshot = Snapshot(
            {
                "home/svc": Entry.directory(mode=0o750, owner="svc"),
                "usr/local/bin/svc": Entry.file(b"#!/bin/sh\n", mode=0o755),
                "usr/bin/sh": Entry.symlink("busybox"),
            }
        )
        with tempfile.TemporaryDirectory() as temp:
            root = Path(temp) / "rootfs"
            snapshot.materialize(root)
            self.assertEqual((root / "usr/local/bin/svc").read_bytes(), b"#!/bin/sh\n")
            self.assertEqual(os.readlink(root / "usr/bin/sh"), "busybox")

            (root / "tmp").mkdir()
            (root / "tmp" / "new").write_text("made by a command")
            captured = Snapshot.capture(root, previous=snapshot, owner="svc")

        self.assertEqual(captured.get("home/svc"), snapshot.get("home/svc"))
        self.assertEqual(captured.get("usr/local/bin/svc"), snapshot.get("usr/local/bin/svc"))
        self.assertEqual(captured.get("tmp/new").owner, "svc")
        self.assertEqual(captured.get("usr/bin/sh").target, "busybox")

    def test_resolve_follows_links_inside_the_image(self) -> None:
        snapshot = Snapshot(
            {
                "bin": Entry.symlink("usr/bin"),
                "usr/bin/sh": Entry.file(b"", mode=0o755),
                "lib": Entry.symlink("/usr/lib"),
                "usr/lib": Entry.directory(),
                "usr/escape": Entry.symlink("../../etc"),
                "loop": Entry.symlink("loop"),
            }
        )
        self.assertEqual(snapshot.resolve("/bin/sh"), "usr/bin/sh")
        self.assertEqual(snapshot.resolve("/bin"), "bin")
        self.assertEqual(snapshot.resolve("/bin", follow=True), "usr/bin")
        self.assertEqual(snapshot.resolve("lib/libc.so"), "usr/lib/libc.so")
        self.assertEqual(snapshot.resolve("/usr/escape/passwd"), "etc/passwd")
        self.assertEqual(snapshot.resolve("/etc/hosts"), "etc/hosts")
        self.assertEqual(snapshot.resolve("/"), "")
        with self.assertRaises(ValueError):
            snapshot.resolve("/loop/file")

    def test_materialize_refuses_symlink_escape(self) -> None:
        snapshot = Snapshot({"link": Entry.symlink("/"), "link/etc/evil": Entry.file(b"x")})
        with tempfile.TemporaryDirectory() as temp:
            with self.assertRaises(ValueError):
                snapshot.materialize(Path(temp) / "rootfs")


class UserDatabaseTests(unittest.TestCase):
    def setUp(self) -> None:
        self.base = Snapshot({"etc/passwd": Entry.file(b"root:x:0:0:root:/root:/bin/sh\n")})

    def test_add_user_appends_entries(self) -> None:
        snapshot = add_user(self.base, "svc", shell="/bin/bash", create_home=True)

        users = read_passwd(snapshot)
        self.assertEqual(users["svc"].uid, FIRST_UID)
        self.assertEqual(users["svc"].shell, "/bin/bash")
        self.assertIn(b"svc:x:1000:", snapshot.read("etc/group"))
        self.assertEqual(snapshot.get("home/svc").owner, "svc")
        self.assertNotIn("svc", read_passwd(self.base))

    def test_uids_are_allocated_sequentially(self) -> None:
        snapshot = add_user(self.base, "a", shell="/bin/sh", create_home=False)
        snapshot = add_user(snapshot, "b", shell="/bin/sh", create_home=False)
        self.assertEqual(read_passwd(snapshot)["b"].uid, FIRST_UID + 1)
        self.assertNotIn("home/b", snapshot)

    def test_existing_user_rejected(self) -> None:
        snapshot = add_user(self.base, "svc", shell="/bin/sh", create_home=False)
        with self.assertRaises(ValueError):
            add_user(snapshot, "svc", shell="/bin/sh", create_home=False)
        with self.assertRaises(ValueError):
            add_user(snapshot, "root", shell="/bin/sh", create_home=False)

    def test_privilege_queries(self) -> None:
        snapshot = add_user(self.base, "svc", shell="/bin/sh", create_home=False)
        self.assertTrue(is_privileged(snapshot, "root"))
        self.assertTrue(is_privileged(snapshot, "0:0"))
        self.assertFalse(is_privileged(snapshot, "svc"))
        self.assertTrue(user_exists(snapshot, "svc"))
        self.assertTrue(user_exists(snapshot, "1234"))
        self.assertFalse(user_exists(snapshot, "ghost"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
