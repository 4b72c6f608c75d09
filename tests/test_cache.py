from __future__ import annotations

import json
from pathlib import Path

from cinderci.cache import CacheStore


def _age(store: CacheStore, key: str, created_at: float) -> None:
    man = store.manifest_path(key)
    data = json.loads(man.read_text())
    data["created_at"] = created_at
    man.write_text(json.dumps(data))


def test_save_and_restore_into_another_executor(tmp_path: Path, home: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    first = make_executor("first")
    (Path(first.working_directory) / "target").mkdir()
    (Path(first.working_directory) / "target" / "a.txt").write_text("built")
    (home / ".cargo" / "bin").mkdir(parents=True)
    (home / ".cargo" / "bin" / "tool").write_text("#!/bin/sh\n")

    saved = store.save("v0-cargo-x-rev1", ["target", "~/.cargo/bin", "missing"], first, family="v0-cargo-x-")
    assert saved.saved
    assert saved.paths == ["target", "~/.cargo/bin"]
    assert saved.missing == ["missing"]
    assert saved.size > 0

    (home / ".cargo" / "bin" / "tool").unlink()
    second = make_executor("second")
    hit = store.restore(["v0-cargo-x-rev1"], second)
    assert hit.hit and hit.reason == "cache hit"
    assert (Path(second.working_directory) / "target" / "a.txt").read_text() == "built"
    assert (home / ".cargo" / "bin" / "tool").exists()


def test_absolute_paths(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    target = tmp_path / "abs" / "data.txt"
    target.parent.mkdir()
    target.write_text("payload")

    assert store.save("abs", [str(target.parent)], ex).saved
    target.unlink()
    assert store.restore(["abs"], ex).hit
    assert target.read_text() == "payload"


def test_prefix_match_takes_newest(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    out = Path(ex.working_directory) / "out"
    out.mkdir()
    for rev in ("rev1", "rev2"):
        (out / "rev").write_text(rev)
        store.save(f"v0-sccache-x.{rev}", ["out"], ex)
    _age(store, "v0-sccache-x.rev1", 1.0)

    (out / "rev").unlink()
    hit = store.restore(["v0-sccache-x."], ex)
    assert hit.key == "v0-sccache-x.rev2"
    assert "prefix match" in hit.reason
    assert (out / "rev").read_text() == "rev2"


def test_exact_match_beats_newer_prefix_match(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    (Path(ex.working_directory) / "f").write_text("x")
    store.save("deps", ["f"], ex)
    store.save("deps-newer", ["f"], ex)
    _age(store, "deps", 1.0)

    assert store.restore(["deps"], ex).key == "deps"


def test_keys_are_tried_in_order_and_miss_is_not_an_error(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    (Path(ex.working_directory) / "f").write_text("x")
    store.save("fallback-1", ["f"], ex)

    assert store.restore(["primary", "fallback-"], ex).key == "fallback-1"
    miss = store.restore(["nothing-"], ex)
    assert not miss.hit
    assert miss.reason == "cache miss"


def test_nothing_to_save(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    saved = store.save("empty", ["not-there"], make_executor())
    assert not saved.saved
    assert saved.reason == "no paths found to save"
    assert store.entries() == []


def test_last_writer_wins(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    f = Path(ex.working_directory) / "f"
    f.write_text("one")
    store.save("same", ["f"], ex)
    f.write_text("two")
    store.save("same", ["f"], ex)

    assert [e.key for e in store.entries()] == ["same"]
    f.unlink()
    store.restore(["same"], ex)
    assert f.read_text() == "two"


def test_prune_keeps_newest_per_family(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    (Path(ex.working_directory) / "f").write_text("x")
    for i in range(4):
        store.save(f"fam-{i}", ["f"], ex, family="fam-")
        _age(store, f"fam-{i}", float(i + 1))
    store.save("other", ["f"], ex, family="other")

    assert sorted(store.prune(keep=2, family="fam-")) == ["fam-0", "fam-1"]
    assert sorted(e.key for e in store.entries()) == ["fam-2", "fam-3", "other"]

    assert store.prune(keep=1) == ["fam-2"]
    stats = store.stats()
    assert stats["entries"] == 2

    store.clear()
    assert store.stats() == {"entries": 0, "bytes": 0}


def test_keys_with_slashes_stay_inside_the_store(tmp_path: Path, make_executor) -> None:
    store = CacheStore(tmp_path / "cache")
    ex = make_executor()
    (Path(ex.working_directory) / "f").write_text("x")
    store.save("v1/../../escape", ["f"], ex)
    assert store.artifact_path("v1/../../escape").parent == store.root
    assert store.find("v1/../../escape") is not None
