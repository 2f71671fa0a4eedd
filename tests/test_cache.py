"""Tests for digests, cache backends and cache-backed program loading."""
import json

import pytest
import requests

from binwp.cache import (
    KNOWLEDGE, PROJECT, CacheContext, Digests, FileCache, HttpCache,
    JsonLifter, read_program,
)
from binwp.errors import CacheError
from binwp.ir import program_to_dict

from programs import program, return_const, write_program


class CountingLifter(JsonLifter):
    def __init__(self):
        self.calls = 0

    def lift(self, filepath):
        self.calls += 1
        return super().lift(filepath)


class FakeResponse:
    def __init__(self, status_code, content=b""):
        self.status_code = status_code
        self.content = content


class FakeSession:
    """Stands in for ``requests.Session`` with an in-memory store."""

    def __init__(self):
        self.store = {}
        self.requests = []

    def get(self, url, timeout=None):
        self.requests.append(("GET", url))
        if url not in self.store:
            return FakeResponse(404)
        return FakeResponse(200, self.store[url])

    def put(self, url, data=None, timeout=None, headers=None):
        self.requests.append(("PUT", url))
        self.store[url] = data
        return FakeResponse(201)


class BrokenSession:
    def get(self, url, timeout=None):
        raise requests.exceptions.ConnectionError("refused")

    def put(self, url, data=None, timeout=None, headers=None):
        raise requests.exceptions.Timeout("slow")


@pytest.fixture
def lifted(tmp_path):
    return write_program(tmp_path / "f.json", program(return_const("f", 3)))


class TestDigests:

    def test_namespaces_differ(self, lifted):
        d = Digests("cfg", lifted, "json")
        assert d.knowledge() != d.project()
        assert len(d.knowledge()) == 64

    def test_depends_on_config_and_loader(self, lifted):
        base = Digests("cfg", lifted, "json").knowledge()
        assert Digests("other", lifted, "json").knowledge() != base
        assert Digests("cfg", lifted, "elf").knowledge() != base
        assert Digests("cfg", lifted, "json").knowledge() == base

    def test_depends_on_contents(self, tmp_path):
        a = write_program(tmp_path / "a.json", program(return_const("f", 1)))
        b = write_program(tmp_path / "b.json", program(return_const("f", 2)))
        assert Digests("c", a, "json").knowledge() != \
            Digests("c", b, "json").knowledge()

    def test_missing_file(self, tmp_path):
        with pytest.raises(CacheError):
            Digests("c", str(tmp_path / "missing"), "json")


class TestFileCache:

    def test_miss_then_hit(self, tmp_path):
        cache = FileCache(tmp_path)
        assert cache.load(KNOWLEDGE, "abc") is None
        cache.save(KNOWLEDGE, "abc", b"{}")
        assert cache.load(KNOWLEDGE, "abc") == b"{}"
        assert cache.load(PROJECT, "abc") is None

    def test_last_writer_wins(self, tmp_path):
        cache = FileCache(tmp_path)
        cache.save(PROJECT, "abc", b"1")
        cache.save(PROJECT, "abc", b"2")
        assert cache.load(PROJECT, "abc") == b"2"
        assert not list((tmp_path / PROJECT).glob("*.tmp"))


class TestHttpCache:

    def test_miss_put_hit(self):
        session = FakeSession()
        cache = HttpCache("http://cache.local/", session=session)
        assert cache.load(KNOWLEDGE, "abc") is None
        cache.save(KNOWLEDGE, "abc", b"data")
        assert cache.load(KNOWLEDGE, "abc") == b"data"
        assert session.requests[1] == (
            "PUT", "http://cache.local/knowledge/abc")

    def test_transport_errors(self):
        cache = HttpCache("http://cache.local", session=BrokenSession())
        with pytest.raises(CacheError):
            cache.load(KNOWLEDGE, "abc")
        with pytest.raises(CacheError):
            cache.save(KNOWLEDGE, "abc", b"")


class TestReadProgram:

    def test_second_read_skips_lifter(self, tmp_path, lifted):
        lifter = CountingLifter()
        ctx = CacheContext(FileCache(tmp_path / "cache"), lifter, "cfg")
        first = read_program(ctx, lifted)
        second = read_program(ctx, lifted)
        assert lifter.calls == 1
        assert first == second
        assert first.find_sub("f") is not None

    def test_project_entry_reused(self, tmp_path, lifted):
        backend = FileCache(tmp_path / "cache")
        lifter = CountingLifter()
        ctx = CacheContext(backend, lifter, "cfg")
        read_program(ctx, lifted)
        knowledge = Digests("cfg", lifted, lifter.name).knowledge()
        (tmp_path / "cache" / KNOWLEDGE / f"{knowledge}.json").unlink()
        read_program(ctx, lifted)
        assert lifter.calls == 1

    def test_attributes_stripped(self, tmp_path):
        d = program_to_dict(program(return_const("f", 3)))
        d["subs"][0]["blks"][0]["defs"][0]["attrs"] = {
            "address": 4096, "insn": "mov rax, 3",
        }
        path = tmp_path / "f.json"
        path.write_text(json.dumps(d))
        ctx = CacheContext(FileCache(tmp_path / "cache"), JsonLifter(), "cfg")
        prog = read_program(ctx, str(path))
        assert prog.subs[0].blks[0].defs[0].attrs == {"address": 4096}

    def test_corrupt_entry(self, tmp_path, lifted):
        backend = FileCache(tmp_path / "cache")
        ctx = CacheContext(backend, JsonLifter(), "cfg")
        digest = Digests("cfg", lifted, "json").knowledge()
        backend.save(KNOWLEDGE, digest, b"not json")
        with pytest.raises(CacheError, match="Corrupt"):
            read_program(ctx, lifted)

    def test_http_backend(self, lifted):
        session = FakeSession()
        lifter = CountingLifter()
        ctx = CacheContext(HttpCache("http://c", session=session), lifter,
                           "cfg")
        read_program(ctx, lifted)
        read_program(ctx, lifted)
        assert lifter.calls == 1
        assert sum(1 for m, _ in session.requests if m == "PUT") == 2
