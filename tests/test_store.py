import json
import tempfile
import unittest
from pathlib import Path

from skillvendor.checksum import digest_bytes
from skillvendor.errors import CorruptDocumentError, InvalidConstraintError, SkillError
from skillvendor.registry import ArtifactRef
from skillvendor.store import (
    Lockfile,
    Manifest,
    Requirement,
    dump_lockfile,
    load_lockfile,
    load_manifest,
    save_lockfile,
    save_manifest,
)


class TestManifest(unittest.TestCase):
    def test_missing_file_is_empty(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_manifest(Path(td) / "skills.json"), Manifest())

    def test_with_requirement_keeps_position(self) -> None:
        m = Manifest().with_requirement("a", "^1.0.0").with_requirement("b", None).with_requirement("a", "~1.2")
        self.assertEqual(m.requirements, (Requirement("a", "~1.2"), Requirement("b", "latest")))

    def test_with_requirement_collapses_duplicates(self) -> None:
        m = Manifest((Requirement("a", "1.0.0"), Requirement("b", "latest"), Requirement("a", "2.0.0")))
        self.assertEqual(m.with_requirement("a", "^2").requirements, (Requirement("a", "^2"), Requirement("b", "latest")))

    def test_with_requirement_validates(self) -> None:
        with self.assertRaises(InvalidConstraintError):
            Manifest().with_requirement("a", ">=nope")
        with self.assertRaises(SkillError):
            Manifest().with_requirement("../a", "latest")

    def test_round_trip_preserves_order_and_duplicates(self) -> None:
        m = Manifest((Requirement("zeta", "latest"), Requirement("alpha", "^1"), Requirement("zeta", ">=1")))
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.json"
            save_manifest(m, path)
            self.assertEqual(load_manifest(path), m)
            self.assertEqual(m.names(), ["zeta", "alpha"])
            self.assertEqual(m.constraints_for("zeta"), ["latest", ">=1"])

    def test_content_hash_ignores_order(self) -> None:
        a = Manifest((Requirement("a", "^1"), Requirement("b", "")))
        b = Manifest((Requirement("b", "latest"), Requirement("a", "^1")))
        self.assertEqual(a.content_hash(), b.content_hash())
        self.assertNotEqual(a.content_hash(), a.with_requirement("a", "^2").content_hash())

    def test_corrupt_manifests(self) -> None:
        docs = [
            "{not json",
            "[]",
            json.dumps({"skills": []}),
            json.dumps({"schema_version": 99, "skills": []}),
            json.dumps({"schema_version": 1, "skills": {}}),
            json.dumps({"schema_version": 1, "skills": [{"name": "a"}]}),
            json.dumps({"schema_version": 1, "skills": [{"name": "a b", "version": "1"}]}),
            json.dumps({"schema_version": 1, "skills": [{"name": "a", "version": "^^"}]}),
        ]
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.json"
            for doc in docs:
                with self.subTest(doc=doc):
                    path.write_text(doc, encoding="utf-8")
                    with self.assertRaises(CorruptDocumentError) as ctx:
                        load_manifest(path)
                    self.assertEqual(ctx.exception.path, path)


class TestLockfile(unittest.TestCase):
    def _lock(self) -> Lockfile:
        return Lockfile(
            entries=(
                ArtifactRef("zeta", "2.0.0", "https://x/zeta.zip", digest_bytes(b"z")),
                ArtifactRef("alpha", "1.0.0", "https://x/alpha.zip", digest_bytes(b"a")),
            ),
            manifest_hash=Manifest((Requirement("alpha", "latest"),)).content_hash(),
        )

    def test_missing_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(load_lockfile(Path(td) / "skills.lock.json"))

    def test_round_trip_is_sorted_and_stable(self) -> None:
        lock = self._lock()
        self.assertEqual(lock.names(), ["alpha", "zeta"])
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.lock.json"
            save_lockfile(lock, path)
            first = path.read_bytes()
            loaded = load_lockfile(path)
            self.assertEqual(loaded, lock)
            save_lockfile(loaded, path)
            self.assertEqual(path.read_bytes(), first)
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["skills.lock.json"])

        data = json.loads(dump_lockfile(lock))
        self.assertEqual(data["schema_version"], 1)
        self.assertEqual(list(data["skills"]), ["alpha", "zeta"])
        self.assertEqual(data["skills"]["alpha"]["digest"], digest_bytes(b"a"))

    def test_corrupt_lockfiles(self) -> None:
        good = {"version": "1.0.0", "url": "https://x/a.zip", "digest": digest_bytes(b"a")}
        docs = [
            json.dumps({"schema_version": 1, "skills": []}),
            json.dumps({"schema_version": 1, "skills": {"a": dict(good, digest="sha256:abc")}}),
            json.dumps({"schema_version": 1, "skills": {"a": dict(good, digest=good["digest"].split(":")[1])}}),
            json.dumps({"schema_version": 1, "skills": {"a": dict(good, version="x")}}),
            json.dumps({"schema_version": 1, "skills": {"a": dict(good, url=" ")}}),
            json.dumps({"schema_version": 1, "skills": {"../a": good}}),
            json.dumps({"schema_version": 1, "manifest_hash": 3, "skills": {"a": good}}),
            json.dumps({"schema_version": True, "skills": {"a": good}}),
        ]
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "skills.lock.json"
            for doc in docs:
                with self.subTest(doc=doc):
                    path.write_text(doc, encoding="utf-8")
                    with self.assertRaises(CorruptDocumentError):
                        load_lockfile(path)


if __name__ == "__main__":
    unittest.main()
