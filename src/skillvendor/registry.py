from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol, Sequence
from urllib.parse import quote, unquote, urljoin, urlsplit

from .checksum import normalize_digest
from .client import HttpClient, SkillHTTPError, TransportError
from .errors import (
    InvalidVersionError,
    NoMatchingVersionError,
    NotFoundError,
    RegistryUnavailableError,
    SkillError,
)
from .versions import compare_versions, parse_constraint, parse_version, sort_versions, version_satisfies

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_skill_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise SkillError("Skill name must be a non-empty string.")
    value = name.strip()
    if not _NAME_RE.match(value):
        raise SkillError(f"Invalid skill name {name!r}. Use letters, digits, '.', '_' or '-'.")
    return value


@dataclass(frozen=True)
class ArtifactRef:
    name: str
    version: str
    url: str
    digest: str


@dataclass(frozen=True)
class IndexEntry:
    name: str
    artifacts: tuple[ArtifactRef, ...]  # ascending semver order
    artifact_url_template: str | None = None

    @property
    def available_versions(self) -> tuple[str, ...]:
        return tuple(a.version for a in self.artifacts)

    @property
    def digest_per_version(self) -> dict[str, str]:
        return {a.version: a.digest for a in self.artifacts}

    def get(self, version: str) -> ArtifactRef | None:
        for artifact in self.artifacts:
            if compare_versions(artifact.version, version) == 0:
                return artifact
        return None


class SkillIndex(Protocol):
    def get_entry(self, name: str) -> IndexEntry:
        ...

    def list_versions(self, name: str) -> tuple[str, ...]:
        ...

    def resolve_constraint(self, name: str, constraint: str) -> ArtifactRef:
        ...


def select_artifact(entry: IndexEntry, constraints: Sequence[str]) -> ArtifactRef:
    for c in constraints:
        parse_constraint(c)
    for artifact in reversed(entry.artifacts):
        if all(version_satisfies(artifact.version, c) for c in constraints):
            return artifact
    raise NoMatchingVersionError(entry.name, " ".join(constraints), entry.available_versions)


class _IndexBase:
    def get_entry(self, name: str) -> IndexEntry:  # pragma: no cover
        raise NotImplementedError

    def list_versions(self, name: str) -> tuple[str, ...]:
        return self.get_entry(validate_skill_name(name)).available_versions

    def resolve_constraint(self, name: str, constraint: str) -> ArtifactRef:
        return select_artifact(self.get_entry(validate_skill_name(name)), [constraint])


def _unwrap_success_envelope(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj["data"]
    if obj.get("success") is False and "error" in obj:
        raise RegistryUnavailableError(f"Registry error: {obj.get('error')}")
    return obj


def _extract_items(obj: Any) -> list[Any]:
    if isinstance(obj, list):
        return obj
    if isinstance(obj, dict):
        for key in ("items", "versions", "releases"):
            value = obj.get(key)
            if isinstance(value, list):
                return value
    return []


def _str_field(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _expand_template(template: str, *, name: str, version: str) -> str:
    return template.replace("{name}", quote(name, safe="")).replace("{version}", quote(version, safe=""))


def _parse_artifact(
    raw: Any,
    *,
    name: str,
    base_url: str | None,
    template: str | None,
) -> ArtifactRef | None:
    if isinstance(raw, str):
        raw = {"version": raw}
    if not isinstance(raw, dict):
        return None
    version = _str_field(raw, "version")
    if version is None:
        return None
    try:
        parse_version(version)
    except InvalidVersionError:
        logger.debug("Ignoring %s: unparsable version %r", name, version)
        return None

    digest_raw = _str_field(raw, "digest", "sha256", "checksum")
    if digest_raw is None:
        logger.debug("Ignoring %s@%s: registry published no digest", name, version)
        return None
    try:
        digest = normalize_digest(digest_raw)
    except SkillError:
        logger.debug("Ignoring %s@%s: malformed digest %r", name, version, digest_raw)
        return None

    url = _str_field(raw, "url", "download_url")
    if url is None and template:
        url = _expand_template(template, name=name, version=version)
    if url is None:
        logger.debug("Ignoring %s@%s: no download URL", name, version)
        return None
    if base_url and "://" not in url:
        url = urljoin(base_url.rstrip("/") + "/", url.lstrip("/"))
    return ArtifactRef(name=name, version=version, url=url, digest=digest)


def build_index_entry(
    name: str,
    items: Iterable[Any],
    *,
    base_url: str | None = None,
    template: str | None = None,
) -> IndexEntry:
    by_version: dict[str, ArtifactRef] = {}
    for item in items:
        artifact = _parse_artifact(item, name=name, base_url=base_url, template=template)
        if artifact is None or artifact.version in by_version:
            continue
        by_version[artifact.version] = artifact
    ordered = tuple(by_version[v] for v in sort_versions(by_version))
    return IndexEntry(name=name, artifacts=ordered, artifact_url_template=template)


class HttpSkillIndex(_IndexBase):
    """Registry source served over HTTP(S) at ``<base_url>/v1/skills/<name>/versions``."""

    def __init__(self, client: HttpClient, base_url: str) -> None:
        self._client = client
        self.base_url = base_url.rstrip("/")
        self._cache: dict[str, IndexEntry] = {}
        self._lock = threading.Lock()

    def get_entry(self, name: str) -> IndexEntry:
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached

        url = f"{self.base_url}/v1/skills/{quote(name, safe='')}/versions"
        items: list[Any] = []
        template: str | None = None
        page = 1
        try:
            while True:
                data = _unwrap_success_envelope(self._client.get_json(url, params={"page": page, "per_page": PAGE_SIZE}))
                items.extend(_extract_items(data))
                if isinstance(data, dict):
                    template = template or _str_field(data, "artifact_url_template")
                if not (isinstance(data, dict) and bool(data.get("has_more"))):
                    break
                page += 1
        except SkillHTTPError as e:
            if e.status_code == 404:
                raise NotFoundError(name) from e
            raise RegistryUnavailableError(f"Registry {self.base_url} failed for {name}: HTTP {e.status_code}") from e
        except TransportError as e:
            raise RegistryUnavailableError(f"Registry {self.base_url} unavailable while looking up {name}: {e}") from e

        entry = build_index_entry(name, items, base_url=self.base_url, template=template)
        logger.info("Registry %s lists %d version(s) of %s", self.base_url, len(entry.artifacts), name)
        with self._lock:
            self._cache[name] = entry
        return entry


class StaticSkillIndex(_IndexBase):
    """In-memory index; also backs ``file://`` registries (a JSON document keyed by skill name)."""

    def __init__(self, entries: dict[str, IndexEntry]) -> None:
        self._entries = dict(entries)

    @classmethod
    def from_document(cls, doc: Any, *, base_url: str | None = None) -> "StaticSkillIndex":
        doc = _unwrap_success_envelope(doc)
        skills = doc.get("skills") if isinstance(doc, dict) else None
        if not isinstance(skills, dict):
            raise RegistryUnavailableError("Registry index document has no 'skills' mapping")
        entries: dict[str, IndexEntry] = {}
        for name, raw in skills.items():
            if not isinstance(name, str):
                continue
            template = _str_field(raw, "artifact_url_template") if isinstance(raw, dict) else None
            entries[name] = build_index_entry(name, _extract_items(raw), base_url=base_url, template=template)
        return cls(entries)

    @classmethod
    def from_path(cls, path: Path) -> "StaticSkillIndex":
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryUnavailableError(f"Could not read registry index {path}: {e}") from e
        return cls.from_document(doc, base_url=path.parent.resolve().as_uri())

    def get_entry(self, name: str) -> IndexEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise NotFoundError(name)
        return entry


class RegistryClient(_IndexBase):
    """
    Ordered list of registry sources. The first source that knows a name wins;
    unavailable sources are skipped but remembered so "absent" is not reported
    when it might be a transient failure.
    """

    def __init__(self, sources: Sequence[SkillIndex]) -> None:
        if not sources:
            raise SkillError("At least one registry source is required.")
        self.sources = tuple(sources)

    def get_entry(self, name: str) -> IndexEntry:
        unavailable: list[RegistryUnavailableError] = []
        for source in self.sources:
            try:
                return source.get_entry(name)
            except NotFoundError:
                continue
            except RegistryUnavailableError as e:
                logger.warning("Skipping unavailable registry source: %s", e)
                unavailable.append(e)
        if unavailable:
            raise RegistryUnavailableError(
                f"Could not look up {name}: {len(unavailable)} registry source(s) unavailable "
                f"(last error: {unavailable[-1]})"
            ) from unavailable[-1]
        raise NotFoundError(name)


def _is_local(url: str) -> bool:
    return url.startswith("file://") or "://" not in url


def _local_path(url: str) -> Path:
    if url.startswith("file://"):
        return Path(unquote(urlsplit(url).path))
    return Path(url).expanduser()


def build_registry(urls: Sequence[str], client: HttpClient) -> RegistryClient:
    sources: list[SkillIndex] = []
    for url in urls:
        if _is_local(url):
            sources.append(StaticSkillIndex.from_path(_local_path(url)))
        else:
            sources.append(HttpSkillIndex(client, url))
    return RegistryClient(sources)
