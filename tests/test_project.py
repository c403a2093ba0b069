import io
import json
import shutil
import tempfile
import unittest
import zipfile
from contextlib import contextmanager
from pathlib import Path

from skillvendor.cache import ArtifactCache
from skillvendor.checksum import digest_bytes
from skillvendor.errors import LockHeldError, NotFoundError, SkillError
from skillvendor.locking import ProcessLock
from skillvendor.project import (
    STATE_LOCK_MISMATCH,
    STATE_MODIFIED,
    STATE_NOT_INSTALLED,
    STATE_NOT_LOCKED,
    STATE_OK,
    SkillProject,
)
from skillvendor.registry import StaticSkillIndex
from skillvendor.sync import SIDECAR_FILENAME


class FakeRegistry:
    """Serves a static index plus the artifact bytes it points at."""

    def __init__(self) -> None:
        self.doc: dict[str, dict[str, list[dict[str, str]]]] = {"skills": {}}
        self.payloads: dict[str, bytes] = {}

    def publish(self, name: str, version: str) -> None:
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("SKILL.md", f"# {name} {version}\n")
        data = buf.getvalue()
        url = f"https://cdn.example/{name}/{version}.zip"
        self.payloads[url] = data
        versions = self.doc["skills"].setdefault(name, {"versions": []})["versions"]
        versions.append({"version": version, "url": url, "digest": digest_bytes(data)})

    def index(self) -> StaticSkillIndex:
        return StaticSkillIndex.from_document(self.doc)

    @contextmanager
    def open_stream(self, url: str):
        yield iter([self.payloads[url]])


class TestSkillProject(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        base = Path(self._td.name)
        self.root = base / "agent"
        self.root.mkdir()
        self.registry = FakeRegistry()
        self.registry.publish("a", "1.0.0")
        self.registry.publish("a", "1.1.0")
        self.registry.publish("b", "0.1.0")
        self.cache = ArtifactCache(base / "cache", self.registry, attempts=1)

    def tearDown(self) -> None:
        self._td.cleanup()

    def project(self, *, with_index: bool = True) -> SkillProject:
        return SkillProject(self.root, cache=self.cache, index=self.registry.index() if with_index else None)

    def test_install_locks_then_reuses_lock(self) -> None:
        p = self.project()
        p.add("a", "~1.0")
        p.add("b")

        first = p.install()
        self.assertTrue(first.relocked)
        self.assertEqual(first.report.installed, ("a", "b"))
        self.assertEqual(first.lockfile.get("a").version, "1.0.0")
        self.assertTrue(p.lock_path.is_file())
        self.assertTrue(p.status().ok)

        # A newer release does not move an existing, satisfying lock.
        self.registry.publish("a", "1.0.5")
        second = self.project().install()
        self.assertFalse(second.relocked)
        self.assertEqual(second.report.unchanged, ("a", "b"))
        self.assertEqual(second.lockfile.get("a").version, "1.0.0")

        # An explicit lock picks it up.
        relocked = self.project().lock()
        self.assertEqual(relocked.get("a").version, "1.0.5")

    def test_failed_resolution_leaves_lockfile_untouched(self) -> None:
        p = self.project()
        p.add("a")
        p.install()
        before = p.lock_path.read_bytes()

        p.add("missing-skill")
        with self.assertRaises(NotFoundError):
            p.install()
        self.assertEqual(p.lock_path.read_bytes(), before)
        self.assertTrue((p.vendor_dir / "a" / "SKILL.md").is_file())

    def test_remove_then_install_prunes_vendor(self) -> None:
        p = self.project()
        p.add("a")
        p.add("b")
        p.install()

        p.remove("b")
        result = p.install()
        self.assertTrue(result.relocked)
        self.assertEqual(result.report.removed, ("b",))
        self.assertEqual(result.lockfile.names(), ["a"])
        self.assertFalse((p.vendor_dir / "b").exists())

        with self.assertRaises(SkillError):
            p.remove("b")

    def test_status_states(self) -> None:
        p = self.project()
        p.add("a", "^1")
        p.add("b")
        p.install()

        (p.vendor_dir / "stray").mkdir()
        (p.vendor_dir / "stray" / SIDECAR_FILENAME).write_text(
            json.dumps({"name": "stray", "version": "1.0.0", "digest": digest_bytes(b"x")}), encoding="utf-8"
        )
        shutil.rmtree(p.vendor_dir / "b")
        sidecar = p.vendor_dir / "a" / SIDECAR_FILENAME
        data = json.loads(sidecar.read_text(encoding="utf-8"))
        data["digest"] = digest_bytes(b"edited")
        sidecar.write_text(json.dumps(data), encoding="utf-8")
        p.add("c")

        status = p.status()
        states = {s.name: s.state for s in status.skills}
        self.assertEqual(states, {"a": STATE_MODIFIED, "b": STATE_NOT_INSTALLED, "c": STATE_NOT_LOCKED})
        self.assertEqual(status.extraneous, ("stray",))
        self.assertFalse(status.lock_current)
        self.assertFalse(status.ok)

        p.add("a", "^2")
        self.assertEqual({s.name: s.state for s in p.status().skills}["a"], STATE_LOCK_MISMATCH)

    def test_status_of_fresh_project(self) -> None:
        status = self.project(with_index=False).status()
        self.assertEqual(status.skills, ())
        self.assertTrue(status.ok)

    def test_sync_needs_a_lockfile(self) -> None:
        p = self.project(with_index=False)
        p.add("a")
        with self.assertRaises(SkillError):
            p.sync()

    def test_sync_uses_only_the_lockfile(self) -> None:
        p = self.project()
        p.add("a")
        p.lock()

        offline = self.project(with_index=False)
        report = offline.sync()
        self.assertEqual(report.installed, ("a",))
        self.assertEqual(offline.status().skills[0].state, STATE_OK)

    def test_lock_requires_registry(self) -> None:
        p = self.project(with_index=False)
        p.add("a")
        with self.assertRaises(SkillError):
            p.lock()
        self.assertFalse(p.lock_path.exists())

    def test_concurrent_run_is_rejected(self) -> None:
        p = self.project()
        p.add("a")
        with ProcessLock(p.process_lock_path):
            with self.assertRaises(LockHeldError):
                p.install()
        self.assertFalse(p.lock_path.exists())
        self.assertFalse(p.vendor_dir.exists())

    def test_prune_cache(self) -> None:
        p = self.project()
        p.add("a", "1.0.0")
        p.install()
        p.add("a", "1.1.0")
        p.install()

        removed = p.prune_cache()
        self.assertEqual(len(removed), 1)
        self.assertEqual(set(self.cache.iter_digests()), p.load_lockfile().digests())


if __name__ == "__main__":
    unittest.main()
