import json

from minder_resilience.core_logic.storage import JsonFileStore, MemoryStore


def test_memory_store_contract():
    store = MemoryStore({"a": "1"})
    assert store.get("a") == "1"
    assert store.get("missing") is None
    store.set("b", "2")
    store.remove("a")
    store.remove("a")
    assert store.get("a") is None
    assert store.get("b") == "2"
    store.clear()
    assert store.get("b") is None


def test_json_file_store_survives_reopen(tmp_path):
    path = tmp_path / "nested" / "queue.json"
    store = JsonFileStore(path)
    store.set("minder_offline_queue", "[]")
    store.set("other", "x")
    store.remove("other")

    reopened = JsonFileStore(path)
    assert reopened.get("minder_offline_queue") == "[]"
    assert reopened.get("other") is None
    assert json.loads(path.read_text(encoding="utf-8")) == {"minder_offline_queue": "[]"}
    assert [p.name for p in path.parent.iterdir()] == ["queue.json"]


def test_json_file_store_starts_fresh_on_corrupt_file(tmp_path):
    path = tmp_path / "queue.json"
    path.write_text("{broken", encoding="utf-8")
    store = JsonFileStore(path)
    assert store.get("anything") is None
    store.set("k", "v")
    assert JsonFileStore(path).get("k") == "v"


def test_json_file_store_ignores_non_object_and_non_string_values(tmp_path):
    path = tmp_path / "queue.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert JsonFileStore(path).get("0") is None

    path.write_text(json.dumps({"ok": "yes", "bad": 3}), encoding="utf-8")
    store = JsonFileStore(path)
    assert store.get("ok") == "yes"
    assert store.get("bad") is None


def test_json_file_store_clear(tmp_path):
    path = tmp_path / "queue.json"
    store = JsonFileStore(path)
    store.set("k", "v")
    store.clear()
    assert json.loads(path.read_text(encoding="utf-8")) == {}
