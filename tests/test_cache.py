import os
import stat
import sys
import threading

import pytest

from relayci.cache import CacheStore, FileSystemBackend, MemoryBackend, compose_key, hash_files
from relayci.errors import CacheAccessError


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


@pytest.fixture
def workdir(tmp_path):
    d = tmp_path / "work"
    _write(d / "target" / "debug" / "app", "binary")
    _write(d / "target" / "debug" / "deps" / "lib.rlib", "lib")
    _write(d / "Cargo.lock", "lock v1")
    return d


def test_miss_then_save_then_hit_restore(tmp_path, workdir):
    store = CacheStore(FileSystemBackend(tmp_path / "cache"))
    assert store.lookup("cargo-abc") is None

    entry = store.save("cargo-abc", [workdir / "target", workdir / "Cargo.lock"], declared=["target", "Cargo.lock"])
    assert entry is not None
    assert entry.paths == ("target", "Cargo.lock")
    assert entry.size > 0

    found = store.lookup("cargo-abc")
    assert found is not None and found.paths == ("target", "Cargo.lock")

    fresh = tmp_path / "fresh"
    store.restore(found, [fresh / p for p in found.paths])
    assert (fresh / "target" / "debug" / "app").read_text() == "binary"
    assert (fresh / "target" / "debug" / "deps" / "lib.rlib").read_text() == "lib"
    assert (fresh / "Cargo.lock").read_text() == "lock v1"


def test_duplicate_save_keeps_first_payload(tmp_path, workdir):
    store = CacheStore(FileSystemBackend(tmp_path / "cache"))
    assert store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"]) is not None

    _write(workdir / "Cargo.lock", "lock v2")
    assert store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"]) is None

    out = tmp_path / "out"
    entry = store.lookup("k")
    store.restore(entry, [out / "Cargo.lock"])
    assert (out / "Cargo.lock").read_text() == "lock v1"


def test_concurrent_saves_have_exactly_one_winner(tmp_path):
    store = CacheStore(FileSystemBackend(tmp_path / "cache"))
    sources = []
    for i in range(8):
        f = tmp_path / f"src{i}" / "payload.txt"
        _write(f, f"writer {i}")
        sources.append(f)

    barrier = threading.Barrier(len(sources))
    results = []
    lock = threading.Lock()

    def save(src):
        barrier.wait()
        entry = store.save("shared", [src], declared=["payload.txt"])
        with lock:
            results.append(entry)

    threads = [threading.Thread(target=save, args=(s,)) for s in sources]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1


def test_two_stores_on_one_directory_first_writer_wins(tmp_path, workdir):
    # separate processes share nothing but the directory
    a = CacheStore(FileSystemBackend(tmp_path / "cache"))
    b = CacheStore(FileSystemBackend(tmp_path / "cache"))
    assert a.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"]) is not None
    assert b.save("k", [workdir / "target"], declared=["target"]) is None
    assert b.lookup("k").paths == ("Cargo.lock",)


def test_save_with_nothing_to_capture_stores_nothing(tmp_path):
    store = CacheStore(MemoryBackend())
    assert store.save("k", [tmp_path / "missing"]) is None
    assert store.lookup("k") is None


def test_corrupt_payload_raises_cache_access_error(tmp_path, workdir):
    backend = FileSystemBackend(tmp_path / "cache")
    store = CacheStore(backend)
    store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"])
    backend.artifact_path("k").write_bytes(b"not a tarball")

    with pytest.raises(CacheAccessError, match="corrupt"):
        store.restore(store.lookup("k"), [tmp_path / "out"])


def test_missing_payload_raises_cache_access_error(tmp_path, workdir):
    backend = FileSystemBackend(tmp_path / "cache")
    store = CacheStore(backend)
    store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"])
    backend.artifact_path("k").unlink()

    with pytest.raises(CacheAccessError):
        store.restore(store.lookup("k"), [tmp_path / "out"])


def test_unreadable_manifest_raises_cache_access_error(tmp_path, workdir):
    backend = FileSystemBackend(tmp_path / "cache")
    store = CacheStore(backend)
    store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"])
    backend.manifest_path("k").write_text("{broken", encoding="utf-8")

    with pytest.raises(CacheAccessError):
        store.lookup("k")


def test_restore_target_count_must_match(tmp_path, workdir):
    store = CacheStore(MemoryBackend())
    entry = store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"])
    with pytest.raises(CacheAccessError):
        store.restore(entry, [tmp_path / "a", tmp_path / "b"])


def test_keys_are_opaque(tmp_path, workdir):
    store = CacheStore(FileSystemBackend(tmp_path / "cache"))
    key = "weird key/with ../ and ${{ chars }}"
    assert store.save(key, [workdir / "Cargo.lock"], declared=["Cargo.lock"]) is not None
    assert store.lookup(key).key == key


def test_hash_files_is_content_addressed(workdir):
    first = hash_files(workdir, ["Cargo.lock"])
    assert first == hash_files(workdir, ["Cargo.lock"])
    assert len(first) == 64

    _write(workdir / "Cargo.lock", "lock v2")
    assert hash_files(workdir, ["Cargo.lock"]) != first


def test_hash_files_globs_and_no_match(workdir):
    assert hash_files(workdir, ["nothing-here.txt"]) == ""
    by_glob = hash_files(workdir, ["target/**/*"])
    by_dir = hash_files(workdir, ["target"])
    assert by_glob == by_dir != ""


def test_compose_key_skips_empty_parts():
    assert compose_key("cargo", "Linux", "", None, "abc") == "cargo-Linux-abc"


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX modes and symlinks")
def test_restore_keeps_modes_symlinks_and_empty_dirs(tmp_path):
    venv = tmp_path / "work" / ".venv"
    (venv / "bin").mkdir(parents=True)
    (venv / "include").mkdir()
    pip = venv / "bin" / "pip"
    pip.write_text("#!/bin/sh\necho pip\n", encoding="utf-8")
    os.chmod(pip, 0o755)
    (venv / "bin" / "python3").write_text("interpreter", encoding="utf-8")
    os.symlink("python3", venv / "bin" / "python")
    os.symlink("/usr/bin/env", venv / "bin" / "env")

    store = CacheStore(FileSystemBackend(tmp_path / "cache"))
    store.save("venv", [venv], declared=[".venv"])

    out = tmp_path / "fresh" / ".venv"
    store.restore(store.lookup("venv"), [out])

    restored_pip = out / "bin" / "pip"
    assert os.access(restored_pip, os.X_OK)
    assert stat.S_IMODE(restored_pip.stat().st_mode) == 0o755
    assert (out / "bin" / "python").is_symlink()
    assert os.readlink(out / "bin" / "python") == "python3"
    assert (out / "bin" / "python").read_text() == "interpreter"
    assert os.readlink(out / "bin" / "env") == "/usr/bin/env"
    assert (out / "include").is_dir()


def test_interrupted_save_leaves_key_fillable(tmp_path, workdir, monkeypatch):
    backend = FileSystemBackend(tmp_path / "cache")
    store = CacheStore(backend)

    def crash(src, dst):
        raise OSError("disk went away")

    monkeypatch.setattr(os, "link", crash)
    with pytest.raises(CacheAccessError):
        store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"])
    monkeypatch.undo()

    assert store.lookup("k") is None
    assert store.save("k", [workdir / "Cargo.lock"], declared=["Cargo.lock"]) is not None

    out = tmp_path / "out"
    store.restore(store.lookup("k"), [out / "Cargo.lock"])
    assert (out / "Cargo.lock").read_text() == "lock v1"
    assert not list((tmp_path / "cache").rglob("*.tmp"))
