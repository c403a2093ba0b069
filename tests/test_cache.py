import os
import tempfile
import time
import unittest
from contextlib import contextmanager
from pathlib import Path

from skillvendor.cache import ArtifactCache
from skillvendor.checksum import digest_bytes
from skillvendor.errors import FetchError, IntegrityError
from skillvendor.registry import ArtifactRef


class FakeTransport:
    def __init__(self, payloads: dict[str, bytes], failures: dict[str, int] | None = None) -> None:
        self.payloads = payloads
        self.failures = dict(failures or {})
        self.calls: list[str] = []

    @contextmanager
    def open_stream(self, url: str):
        self.calls.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise FetchError(f"connection reset while fetching {url}")
        data = self.payloads[url]
        yield iter([data[i : i + 7] for i in range(0, len(data), 7)])


def _ref(name: str, data: bytes, url: str | None = None) -> ArtifactRef:
    return ArtifactRef(name=name, version="1.0.0", url=url or f"https://cdn.example/{name}.zip", digest=digest_bytes(data))


class TestArtifactCache(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name) / "cache"
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self._td.cleanup()

    def _cache(self, transport: FakeTransport, **kwargs) -> ArtifactCache:
        return ArtifactCache(self.root, transport, sleep=self.sleeps.append, **kwargs)

    def test_miss_then_hit(self) -> None:
        data = b"skill archive bytes" * 50
        ref = _ref("a", data)
        transport = FakeTransport({ref.url: data})
        cache = self._cache(transport)

        entry = cache.ensure_cached(ref)
        self.assertEqual(entry.path.read_bytes(), data)
        self.assertEqual(entry.size, len(data))
        self.assertEqual(entry.path, cache.path_for(ref.digest))
        hexdigest = ref.digest.split(":", 1)[1]
        self.assertEqual(entry.path, self.root / "sha256" / hexdigest[:2] / hexdigest)

        again = cache.ensure_cached(ref)
        self.assertEqual(again, entry)
        self.assertEqual(transport.calls, [ref.url])

    def test_shared_artifact_downloads_once(self) -> None:
        data = b"shared"
        a = _ref("a", data, url="https://cdn.example/shared.zip")
        b = _ref("b", data, url="https://mirror.example/shared.zip")
        transport = FakeTransport({a.url: data, b.url: data})
        cache = self._cache(transport)
        self.assertEqual(cache.ensure_cached(a).path, cache.ensure_cached(b).path)
        self.assertEqual(transport.calls, [a.url])

    def test_integrity_failure_leaves_nothing_behind(self) -> None:
        ref = _ref("a", b"expected")
        transport = FakeTransport({ref.url: b"tampered"})
        cache = self._cache(transport)

        with self.assertRaises(IntegrityError) as ctx:
            cache.ensure_cached(ref)
        self.assertEqual(ctx.exception.expected, ref.digest)
        self.assertEqual(ctx.exception.actual, digest_bytes(b"tampered"))
        self.assertFalse(cache.has(ref.digest))
        self.assertEqual(list(cache.tmp_dir.iterdir()), [])
        # Integrity failures are not retried.
        self.assertEqual(len(transport.calls), 1)
        self.assertEqual(self.sleeps, [])

    def test_transient_failures_are_retried_with_backoff(self) -> None:
        data = b"payload"
        ref = _ref("a", data)
        transport = FakeTransport({ref.url: data}, failures={ref.url: 2})
        cache = self._cache(transport, attempts=3, backoff_s=0.5)

        entry = cache.ensure_cached(ref)
        self.assertEqual(entry.path.read_bytes(), data)
        self.assertEqual(len(transport.calls), 3)
        self.assertEqual(self.sleeps, [0.5, 1.0])

    def test_gives_up_after_bounded_attempts(self) -> None:
        ref = _ref("a", b"payload")
        transport = FakeTransport({ref.url: b"payload"}, failures={ref.url: 10})
        cache = self._cache(transport, attempts=3)

        with self.assertRaises(FetchError):
            cache.ensure_cached(ref)
        self.assertEqual(len(transport.calls), 3)
        self.assertFalse(cache.has(ref.digest))

    def test_verify_evicts_corrupted_entry(self) -> None:
        ref = _ref("a", b"payload")
        cache = self._cache(FakeTransport({ref.url: b"payload"}))
        entry = cache.ensure_cached(ref)
        self.assertEqual(cache.verify(ref.digest), entry)

        entry.path.write_bytes(b"bit rot")
        with self.assertRaises(IntegrityError):
            cache.verify(ref.digest)
        self.assertFalse(cache.has(ref.digest))

    def test_ensure_verified_refetches_corrupted_entry(self) -> None:
        ref = _ref("a", b"payload")
        transport = FakeTransport({ref.url: b"payload"})
        cache = self._cache(transport)
        cache.ensure_cached(ref)

        self.assertEqual(cache.ensure_verified(ref).path.read_bytes(), b"payload")
        self.assertEqual(transport.calls, [ref.url])

        cache.path_for(ref.digest).write_bytes(b"bit rot")
        entry = cache.ensure_verified(ref)
        self.assertEqual(entry.path.read_bytes(), b"payload")
        self.assertEqual(transport.calls, [ref.url, ref.url])

    def test_per_digest_locks_are_released(self) -> None:
        good = _ref("a", b"payload")
        bad = _ref("b", b"expected")
        cache = self._cache(FakeTransport({good.url: b"payload", bad.url: b"tampered"}))

        cache.ensure_cached(good)
        with self.assertRaises(IntegrityError):
            cache.ensure_cached(bad)
        self.assertEqual(cache._inflight, {})

    def test_prune_keeps_referenced_digests(self) -> None:
        keep = _ref("keep", b"keep")
        drop = _ref("drop", b"drop")
        cache = self._cache(FakeTransport({keep.url: b"keep", drop.url: b"drop"}))
        cache.ensure_cached(keep)
        cache.ensure_cached(drop)

        removed = cache.prune([keep.digest])
        self.assertEqual(removed, [drop.digest])
        self.assertTrue(cache.has(keep.digest))
        self.assertFalse(cache.has(drop.digest))
        self.assertEqual(list(cache.iter_digests()), [keep.digest])

    def test_sweep_tmp_only_removes_stale_downloads(self) -> None:
        cache = self._cache(FakeTransport({}))
        cache.tmp_dir.mkdir(parents=True)
        stale = cache.tmp_dir / "a-old.part"
        fresh = cache.tmp_dir / "b-new.part"
        stale.write_bytes(b"x")
        fresh.write_bytes(b"y")
        old = time.time() - 7200
        os.utime(stale, (old, old))

        self.assertEqual(cache.sweep_tmp(), 1)
        self.assertFalse(stale.exists())
        self.assertTrue(fresh.exists())


if __name__ == "__main__":
    unittest.main()
