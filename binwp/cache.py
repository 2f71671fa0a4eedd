"""
Binwp — Cache-backed program loading.

Lifting a binary is expensive, so lifted programs are stored under
content digests:

    project    the raw lifter output
    knowledge  the program after attribute stripping (what the engine uses)

Each digest covers the configuration digest, the file contents and the
loader name, salted with the namespace.  A second ``read_program`` on the
same file never reaches the lifter.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import requests

from binwp import config
from binwp.errors import CacheError
from binwp.ir import Program, program_from_dict, program_to_dict, \
    strip_attributes

logger = logging.getLogger("binwp.cache")

KNOWLEDGE = "knowledge"
PROJECT = "project"


# ── Digests ───────────────────────────────────────────────────────────

def file_digest(filepath: str) -> str:
    hasher = hashlib.sha256()
    try:
        with open(filepath, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                hasher.update(chunk)
    except OSError as exc:
        raise CacheError(f"Cannot read {filepath}: {exc}") from exc
    return hasher.hexdigest()


class Digests:
    """Namespace-salted digests for one (configuration, file, loader)."""

    def __init__(self, config_digest: str, filepath: str, loader: str) -> None:
        self.subject = config_digest + file_digest(filepath) + loader

    def for_namespace(self, namespace: str) -> str:
        data = f"{namespace}:{self.subject}".encode("utf-8")
        return hashlib.sha256(data).hexdigest()

    def knowledge(self) -> str:
        return self.for_namespace(KNOWLEDGE)

    def project(self) -> str:
        return self.for_namespace(PROJECT)


# ── Backends ──────────────────────────────────────────────────────────

class CacheBackend(Protocol):
    def load(self, namespace: str, digest: str) -> bytes | None: ...

    def save(self, namespace: str, digest: str, data: bytes) -> None: ...


class FileCache:
    """One file per entry under ``root/<namespace>/<digest>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, namespace: str, digest: str) -> Path:
        return self.root / namespace / f"{digest}.json"

    def load(self, namespace: str, digest: str) -> bytes | None:
        path = self._path(namespace, digest)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise CacheError(f"Cannot read cache entry {path}: {exc}") from exc

    def save(self, namespace: str, digest: str, data: bytes) -> None:
        path = self._path(namespace, digest)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise CacheError(f"Cannot write cache entry {path}: {exc}") from exc


class HttpCache:
    """Entries at ``<base_url>/<namespace>/<digest>``; 404 is a miss."""

    def __init__(self, base_url: str, session: requests.Session | None = None,
                 timeout: int = config.CACHE_TIMEOUT_S) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, namespace: str, digest: str) -> str:
        return f"{self.base_url}/{namespace}/{digest}"

    def load(self, namespace: str, digest: str) -> bytes | None:
        url = self._url(namespace, digest)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise CacheError(f"Cache GET {url} failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise CacheError(
                f"Cache GET {url} returned HTTP {response.status_code}"
            )
        return response.content

    def save(self, namespace: str, digest: str, data: bytes) -> None:
        url = self._url(namespace, digest)
        try:
            response = self.session.put(
                url, data=data, timeout=self.timeout,
                headers={"Content-Type": "application/json"},
            )
        except requests.exceptions.RequestException as exc:
            raise CacheError(f"Cache PUT {url} failed: {exc}") from exc
        if response.status_code not in (200, 201, 204):
            raise CacheError(
                f"Cache PUT {url} returned HTTP {response.status_code}"
            )


# ── Lifters ───────────────────────────────────────────────────────────

class Lifter(Protocol):
    name: str

    def lift(self, filepath: str) -> dict[str, Any]: ...


class JsonLifter:
    """Reads a program already lifted to the JSON program format."""
    name = "json"

    def lift(self, filepath: str) -> dict[str, Any]:
        try:
            with open(filepath, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise CacheError(f"Cannot load lifted program {filepath}: "
                             f"{exc}") from exc


LIFTERS: dict[str, type] = {"json": JsonLifter}


@dataclass
class CacheContext:
    backend: CacheBackend
    lifter: Lifter = field(default_factory=JsonLifter)
    config_digest: str = field(default_factory=config.config_digest)

    @classmethod
    def from_config(cls) -> CacheContext:
        if config.CACHE_URL:
            backend: CacheBackend = HttpCache(config.CACHE_URL)
        else:
            backend = FileCache(config.CACHE_DIR)
        lifter_cls = LIFTERS.get(config.LOADER)
        if lifter_cls is None:
            raise CacheError(f"Unknown loader: {config.LOADER}")
        return cls(backend=backend, lifter=lifter_cls())


# ── Loading ───────────────────────────────────────────────────────────

def _decode(data: bytes, what: str) -> Program:
    try:
        return program_from_dict(json.loads(data))
    except (ValueError, KeyError, TypeError) as exc:
        raise CacheError(f"Corrupt {what} cache entry: {exc}") from exc


def _encode(prog: Program) -> bytes:
    return json.dumps(program_to_dict(prog), sort_keys=True).encode("utf-8")


def read_program(ctx: CacheContext, filepath: str) -> Program:
    """The stripped program for *filepath*, lifting only on a cache miss."""
    digests = Digests(ctx.config_digest, filepath, ctx.lifter.name)
    knowledge = digests.knowledge()

    data = ctx.backend.load(KNOWLEDGE, knowledge)
    if data is not None:
        logger.info("Loaded %s from the knowledge cache", filepath)
        return _decode(data, KNOWLEDGE)

    project = digests.project()
    data = ctx.backend.load(PROJECT, project)
    if data is not None:
        logger.info("Loaded %s from the project cache", filepath)
        raw = _decode(data, PROJECT)
    else:
        logger.info("Lifting %s with the %s lifter", filepath, ctx.lifter.name)
        try:
            raw = program_from_dict(ctx.lifter.lift(filepath))
        except (KeyError, TypeError, ValueError) as exc:
            raise CacheError(f"Lifter output for {filepath} is not a "
                             f"program: {exc}") from exc
        ctx.backend.save(PROJECT, project, _encode(raw))

    prog = strip_attributes(raw)
    ctx.backend.save(KNOWLEDGE, knowledge, _encode(prog))
    return prog
