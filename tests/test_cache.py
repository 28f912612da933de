import os
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from secgate import cache as cache_module
from secgate.cache import CacheStore, cache_key, hash_files


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)
    return path


@pytest.fixture
def store(tmp_path):
    return CacheStore(tmp_path / "cache")


def test_cache_key_format():
    assert cache_key("juice-shop-image", "abc", os_name="Linux") == "juice-shop-image-Linux-abc"
    assert cache_key("juice-shop-image", os_name="Linux") == "juice-shop-image-Linux-"
    assert cache_key("node-modules", "abc", include_os=False) == "node-modules-abc"


def test_hash_files_tracks_content(tmp_path):
    _write(tmp_path / "Dockerfile", "FROM node:18\n")
    _write(tmp_path / "package-lock.json", "{}")

    first = hash_files(tmp_path, ["Dockerfile", "package-lock.json"])
    assert first == hash_files(tmp_path, ["package-lock.json", "Dockerfile"])

    _write(tmp_path / "Dockerfile", "FROM node:20\n")
    assert hash_files(tmp_path, ["Dockerfile", "package-lock.json"]) != first


def test_hash_files_empty_when_nothing_matches(tmp_path):
    assert hash_files(tmp_path, ["missing.lock"]) == ""


def test_miss_on_empty_store(store, tmp_path):
    result = store.restore("img-Linux-abc", ["img-Linux-"], dest=tmp_path / "ws", paths=["out"])
    assert not result.hit
    assert not result.exact
    assert result.matched_key is None
    assert result.paths == ("out",)


def test_exact_hit_restores_files(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "out" / "image.tar", "layers")
    entry = store.save("img-Linux-abc", ["out"], root=src)
    assert entry is not None and entry.key == "img-Linux-abc"

    dest = tmp_path / "dest"
    result = store.restore("img-Linux-abc", dest=dest)
    assert result.hit and result.exact
    assert result.matched_key == "img-Linux-abc"
    assert (dest / "out" / "image.tar").read_text() == "layers"


def test_prefix_fallback_is_a_partial_hit(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "out" / "image.tar", "old")
    store.save("img-Linux-old", ["out"], root=src)

    dest = tmp_path / "dest"
    result = store.restore("img-Linux-new", ["img-Linux-"], dest=dest)
    assert result.hit
    assert not result.exact
    assert result.matched_key == "img-Linux-old"
    assert (dest / "out" / "image.tar").read_text() == "old"


def test_prefix_fallback_prefers_newest_entry(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "first")
    store.save("img-Linux-1", ["f.txt"], root=src)
    _write(src / "f.txt", "second")
    store.save("img-Linux-2", ["f.txt"], root=src)

    result = store.restore("img-Linux-3", ["img-Linux-"], dest=tmp_path / "dest")
    assert result.matched_key == "img-Linux-2"
    assert (tmp_path / "dest" / "f.txt").read_text() == "second"


def test_restore_keys_tried_in_declared_order(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "x")
    store.save("img-Linux-abc", ["f.txt"], root=src)
    store.save("other-Linux-abc", ["f.txt"], root=src)

    result = store.restore("img-Linux-zzz", ["img-", "other-"], dest=tmp_path / "dest")
    assert result.matched_key == "img-Linux-abc"


def test_save_without_files_returns_none(store, tmp_path):
    assert store.save("img-Linux-abc", ["nothing-here"], root=tmp_path) is None
    assert store.entries() == []


def test_save_rejects_absolute_paths(store, tmp_path):
    with pytest.raises(ValueError, match="relative"):
        store.save("img-Linux-abc", [str(tmp_path / "abs")], root=tmp_path)


def test_lru_eviction_drops_least_recently_used(tmp_path):
    src = tmp_path / "src"
    for name in ("a", "b", "c"):
        _write(src / name / "blob.bin", os.urandom(4000))

    store = CacheStore(tmp_path / "cache", capacity_bytes=10_000)
    store.save("k-a", ["a"], root=src)
    time.sleep(0.01)
    store.save("k-b", ["b"], root=src)
    time.sleep(0.01)
    # touching a makes b the least recently used entry
    assert store.restore("k-a", dest=tmp_path / "dest").hit
    time.sleep(0.01)
    store.save("k-c", ["c"], root=src)

    keys = {e.key for e in store.entries()}
    assert keys == {"k-a", "k-c"}
    assert not store.restore("k-b", dest=tmp_path / "dest").hit


def test_entry_larger_than_capacity_is_not_kept(tmp_path):
    src = tmp_path / "src"
    _write(src / "big.bin", os.urandom(8000))
    store = CacheStore(tmp_path / "cache", capacity_bytes=1000)
    assert store.save("big", ["big.bin"], root=src) is None
    assert store.entries() == []


def test_entries_and_clear(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "x")
    store.save("one", ["f.txt"], root=src)
    time.sleep(0.01)
    store.save("two", ["f.txt"], root=src)

    assert [e.key for e in store.entries()] == ["two", "one"]
    assert store.clear() == 2
    assert store.entries() == []
    assert not store.restore("one", dest=tmp_path / "dest").hit


def test_index_survives_reopen(tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "persisted")
    CacheStore(tmp_path / "cache").save("k", ["f.txt"], root=src)

    result = CacheStore(tmp_path / "cache").restore("k", dest=tmp_path / "dest")
    assert result.exact
    assert (tmp_path / "dest" / "f.txt").read_text() == "persisted"


def test_missing_blob_is_a_miss_and_drops_the_entry(store, tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "x")
    entry = store.save("k", ["f.txt"], root=src)
    entry.path.unlink()

    assert not store.restore("k", dest=tmp_path / "dest").hit
    assert store.entries() == []


def test_restore_keeps_blob_opened_before_eviction(store, tmp_path, monkeypatch):
    src = tmp_path / "src"
    _write(src / "f.txt", "still here")
    entry = store.save("k", ["f.txt"], root=src)

    extract = cache_module._extract

    def evicted_then_extract(archive, dest):
        # a concurrent save evicts the entry between lookup and extraction
        entry.path.unlink()
        extract(archive, dest)

    monkeypatch.setattr(cache_module, "_extract", evicted_then_extract)
    result = store.restore("k", dest=tmp_path / "dest")
    assert result.hit
    assert (tmp_path / "dest" / "f.txt").read_text() == "still here"


def test_concurrent_stores_share_one_index(tmp_path):
    src = tmp_path / "src"
    _write(src / "f.txt", "shared")

    def save_batch(worker):
        # separate store objects, as separate secgate processes would have
        store = CacheStore(tmp_path / "cache")
        for i in range(15):
            store.save(f"w{worker}-{i}", ["f.txt"], root=src)

    with ThreadPoolExecutor(max_workers=4) as pool:
        for future in [pool.submit(save_batch, w) for w in range(4)]:
            future.result()

    keys = {e.key for e in CacheStore(tmp_path / "cache").entries()}
    assert keys == {f"w{w}-{i}" for w in range(4) for i in range(15)}
    assert not list((tmp_path / "cache").rglob("*.tmp"))


def test_restore_while_saves_evict(tmp_path):
    src = tmp_path / "src"
    for i in range(30):
        _write(src / f"k-{i}" / "blob.bin", os.urandom(4000))

    def save_all():
        store = CacheStore(tmp_path / "cache", capacity_bytes=6000)
        for i in range(30):
            store.save(f"k-{i}", [f"k-{i}"], root=src)

    def restore_many():
        store = CacheStore(tmp_path / "cache", capacity_bytes=6000)
        for n in range(60):
            store.restore("k-none", ["k-"], dest=tmp_path / f"dest-{n}")

    with ThreadPoolExecutor(max_workers=2) as pool:
        saving = pool.submit(save_all)
        restoring = pool.submit(restore_many)
        saving.result()
        restoring.result()

    # a single 4k entry fits the capacity
    assert len(CacheStore(tmp_path / "cache").entries()) == 1
