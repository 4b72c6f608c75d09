# cache.py
from __future__ import annotations

import json
import posixpath
import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote

from .executors import BaseExecutor, split_path

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Key-addressed caching, the way hosted CI providers do it:
#
#   save_cache:    key (fully rendered) + paths  ->  <root>/<key>.tar.gz + manifest
#   restore_cache: [key, ...]  ->  first key with an exact match, else the most
#                  recently saved entry whose key starts with it
#
# Entries are never locked. Two jobs saving the same key race and the last
# writer wins (the archive is written to a temp file and renamed into place).
#
# Archive members are stored as  home/...  work/...  root/...  so an entry saved
# from one executor restores into another executor's home / working directory.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict = field(default_factory=dict)


@dataclass(frozen=True)
class CacheSave:
    saved: bool
    key: str
    reason: str
    paths: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    size: int = 0


@dataclass(frozen=True)
class CacheEntry:
    key: str
    family: str
    created_at: float
    size: int
    paths: List[str]
    artifact: Path
    manifest_path: Path


def _json_dumps_pretty(obj) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False)


def _file_stem(key: str) -> str:
    return quote(key, safe="-_.") or "_"


def _split_member(name: str) -> tuple[str, str]:
    name = posixpath.normpath(name)
    head, _, rest = name.partition("/")
    return head, rest or "."


class CacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_file_stem(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_file_stem(key)}.manifest.json"

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def entries(self) -> List[CacheEntry]:
        """All complete entries, newest first."""
        out: List[CacheEntry] = []
        for man in self.root.glob("*.manifest.json"):
            try:
                data = json.loads(man.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            art = man.with_name(man.name[: -len(".manifest.json")] + ".tar.gz")
            if not art.exists():
                continue
            out.append(
                CacheEntry(
                    key=data.get("key", ""),
                    family=data.get("family", ""),
                    created_at=float(data.get("created_at", art.stat().st_mtime)),
                    size=art.stat().st_size,
                    paths=[p.get("spec", "") for p in data.get("paths", [])],
                    artifact=art,
                    manifest_path=man,
                )
            )
        out.sort(key=lambda e: e.created_at, reverse=True)
        return out

    def find(self, key: str) -> Optional[CacheEntry]:
        """Exact key first, else the newest entry whose key starts with `key`."""
        entries = self.entries()
        for e in entries:
            if e.key == key:
                return e
        for e in entries:
            if e.key.startswith(key):
                return e
        return None

    # ------------------------------------------------------------------
    # Restore / save
    # ------------------------------------------------------------------

    def restore(self, keys: Sequence[str], executor: BaseExecutor) -> CacheHit:
        """
        Try keys in order; unpack the first match into the executor.
        A miss is not an error.
        """
        for key in keys:
            entry = self.find(key)
            if entry is None:
                continue

            try:
                manifest = json.loads(entry.manifest_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                manifest = {}

            roots = {
                "home": executor.home(),
                "work": executor.working_directory,
                "root": "/",
            }

            with tempfile.TemporaryDirectory(prefix="cinderci-restore-") as tmp:
                parts: Dict[str, tarfile.TarFile] = {}
                try:
                    with tarfile.open(str(entry.artifact), mode="r:gz") as src:
                        for member in src:
                            prefix, rest = _split_member(member.name)
                            if prefix not in roots:
                                continue
                            if prefix not in parts:
                                parts[prefix] = tarfile.open(str(Path(tmp) / f"{prefix}.tar"), mode="w")
                            data = src.extractfile(member) if member.isfile() else None
                            member.name = rest
                            if member.islnk():
                                member.linkname = _split_member(member.linkname)[1]
                            parts[prefix].addfile(member, data)
                finally:
                    for t in parts.values():
                        t.close()

                for prefix in parts:
                    executor.import_tree(roots[prefix], Path(tmp) / f"{prefix}.tar")

            reason = "cache hit" if entry.key == key else f"cache hit (prefix match: {entry.key})"
            return CacheHit(hit=True, key=entry.key, reason=reason, manifest=manifest)

        return CacheHit(hit=False, key=keys[0] if keys else "", reason="cache miss")

    def save(
        self,
        key: str,
        paths: Sequence[str],
        executor: BaseExecutor,
        *,
        family: str | None = None,
        extra: Optional[Dict] = None,
    ) -> CacheSave:
        """
        Archive `paths` (as seen by the executor) under `key`.
        Missing paths are skipped; if nothing exists, no entry is written.
        """
        home = executor.home()
        workdir = executor.working_directory

        saved: List[Dict[str, str]] = []
        missing: List[str] = []

        art = self.artifact_path(key)
        man = self.manifest_path(key)
        tmp = art.with_name(art.name + f".{time.time_ns()}.tmp")

        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for spec in paths:
                    prefix, root, rel = split_path(spec, home, workdir)
                    if executor.export_tree(root, rel, tar, prefix):
                        saved.append({"spec": spec, "prefix": prefix, "rel": rel})
                    else:
                        missing.append(spec)

            if not saved:
                return CacheSave(saved=False, key=key, reason="no paths found to save", missing=missing)

            manifest = {
                "key": key,
                "family": family if family is not None else key,
                "created_at": time.time(),
                "paths": saved,
                "missing": missing,
                "arch": executor.arch(),
                **(extra or {}),
            }
            # last writer wins
            tmp.replace(art)
            man_tmp = man.with_name(man.name + f".{time.time_ns()}.tmp")
            man_tmp.write_text(_json_dumps_pretty(manifest), encoding="utf-8")
            man_tmp.replace(man)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        return CacheSave(
            saved=True,
            key=key,
            reason="saved",
            paths=[s["spec"] for s in saved],
            missing=missing,
            size=art.stat().st_size,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def remove(self, entry: CacheEntry) -> None:
        entry.artifact.unlink(missing_ok=True)
        entry.manifest_path.unlink(missing_ok=True)

    def prune(self, keep: int = 3, family: str | None = None) -> List[str]:
        """
        Keep only the newest N entries per key family (or for one family).
        Returns the removed keys.
        """
        by_family: Dict[str, List[CacheEntry]] = {}
        for e in self.entries():
            if family is not None and e.family != family:
                continue
            by_family.setdefault(e.family, []).append(e)

        removed: List[str] = []
        for fam_entries in by_family.values():
            for e in fam_entries[keep:]:
                self.remove(e)
                removed.append(e.key)
        return removed

    def stats(self) -> Dict[str, int]:
        entries = self.entries()
        return {"entries": len(entries), "bytes": sum(e.size for e in entries)}

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
        self.root.mkdir(parents=True, exist_ok=True)
