import json
import os
import stat

import pytest

from ndagent.state.store import StateError, StateStore


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / "db" / "state")


def test_missing_file_is_zero_state(state_path):
    store = StateStore(state_path)
    assert store.last_executed_task_id() == 0
    assert store.current_response_seq() == 0
    assert store.last_rebind_token_hash() == ""
    assert not os.path.exists(state_path)


def test_set_last_executed_task_id_persists_across_reload(state_path):
    store = StateStore(state_path)
    store.set_last_executed_task_id(42)
    assert store.last_executed_task_id() == 42

    reloaded = StateStore(state_path)
    assert reloaded.last_executed_task_id() == 42


def test_set_last_executed_task_id_refuses_to_go_backwards(state_path):
    store = StateStore(state_path)
    store.set_last_executed_task_id(10)
    with pytest.raises(StateError):
        store.set_last_executed_task_id(10)
    with pytest.raises(StateError):
        store.set_last_executed_task_id(5)
    assert store.last_executed_task_id() == 10


def test_acquire_next_response_seq_is_monotonic_and_persisted(state_path):
    store = StateStore(state_path)
    first = store.acquire_next_response_seq()
    second = store.acquire_next_response_seq()
    assert first == 1
    assert second == first + 1
    assert store.current_response_seq() == second
    assert StateStore(state_path).current_response_seq() == second


def test_state_file_mode_and_keys(state_path):
    store = StateStore(state_path)
    store.set_last_executed_task_id(7)
    store.acquire_next_response_seq()
    mode = stat.S_IMODE(os.stat(state_path).st_mode)
    assert mode == 0o600
    with open(state_path, encoding="utf-8") as handle:
        doc = json.load(handle)
    assert doc["last_executed_task_id"] == 7
    assert doc["next_response_seq"] == store.current_response_seq()
    assert "last_rebind_token_hash" not in doc


def test_rebind_token_hash_round_trip_and_reset(state_path):
    store = StateStore(state_path)
    digest = "ab" * 32
    store.set_last_rebind_token_hash(digest)
    assert StateStore(state_path).last_rebind_token_hash() == digest

    store.set_last_rebind_token_hash("")
    assert StateStore(state_path).last_rebind_token_hash() == ""
    with open(state_path, encoding="utf-8") as handle:
        assert "last_rebind_token_hash" not in json.load(handle)


def test_corrupted_file_raises(state_path):
    os.makedirs(os.path.dirname(state_path))
    with open(state_path, "w", encoding="utf-8") as handle:
        handle.write("{not json")
    with pytest.raises(StateError):
        StateStore(state_path)


def test_wrong_field_type_raises(state_path):
    os.makedirs(os.path.dirname(state_path))
    with open(state_path, "w", encoding="utf-8") as handle:
        json.dump({"next_response_seq": "nope"}, handle)
    with pytest.raises(StateError):
        StateStore(state_path)


def test_acquire_rolls_back_on_persist_failure(state_path):
    store = StateStore(state_path)
    before = store.acquire_next_response_seq()

    os.remove(state_path)
    os.mkdir(state_path)
    with pytest.raises(StateError):
        store.acquire_next_response_seq()
    assert store.current_response_seq() == before
    assert os.listdir(os.path.dirname(state_path)) == ["state"]

    os.rmdir(state_path)
    assert store.acquire_next_response_seq() == before + 1