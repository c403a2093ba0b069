import io
import tarfile
import tempfile
import unittest
import zipfile
from pathlib import Path

from skillvendor.archive import ArchiveError, materialize, payload_name


def _tar(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _unsupported_zip(files: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_STORED) as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    raw = bytearray(buf.getvalue())
    # Rewrite the compression method in local and central headers to an unknown id.
    for sig, offset in ((b"PK\x03\x04", 8), (b"PK\x01\x02", 10)):
        start = raw.find(sig)
        while start != -1:
            raw[start + offset : start + offset + 2] = (99).to_bytes(2, "little")
            start = raw.find(sig, start + 4)
    return bytes(raw)


class TestMaterialize(unittest.TestCase):
    def test_tarball_single_root_is_unwrapped(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            artifact = Path(td) / "a.tar.gz"
            artifact.write_bytes(_tar({"a-1.0.0/SKILL.md": b"# a\n", "a-1.0.0/ref/notes.md": b"n\n"}))
            dest = Path(td) / "out"
            self.assertEqual(materialize(artifact, dest, url="https://x/a.tar.gz"), 2)
            self.assertEqual((dest / "SKILL.md").read_bytes(), b"# a\n")
            self.assertTrue((dest / "ref" / "notes.md").is_file())

    def test_zip_with_several_top_level_entries_is_kept(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            artifact = Path(td) / "a.zip"
            with zipfile.ZipFile(artifact, "w") as zf:
                zf.writestr("SKILL.md", "# a\n")
                zf.writestr("scripts/run.sh", "echo\n")
            dest = Path(td) / "out"
            materialize(artifact, dest, url="https://x/a.zip")
            self.assertEqual(sorted(p.name for p in dest.iterdir()), ["SKILL.md", "scripts"])

    def test_tar_traversal_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            artifact = Path(td) / "evil.tar.gz"
            artifact.write_bytes(_tar({"../evil.txt": b"x"}))
            with self.assertRaises(ArchiveError):
                materialize(artifact, Path(td) / "out", url="https://x/evil.tar.gz")
            self.assertFalse((Path(td) / "evil.txt").exists())

    def test_unsupported_compression_is_an_archive_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            artifact = Path(td) / "a.zip"
            artifact.write_bytes(_unsupported_zip({"SKILL.md": b"# a\n"}))
            with self.assertRaises(ArchiveError):
                materialize(artifact, Path(td) / "out", url="https://x/a.zip")

    def test_payload_name(self) -> None:
        self.assertEqual(payload_name("https://x/skills/SKILL%20v1.md?sig=1"), "SKILL v1.md")
        self.assertEqual(payload_name("https://x/"), "artifact")
        self.assertEqual(payload_name("https://x/.hidden"), "artifact")


if __name__ == "__main__":
    unittest.main()
