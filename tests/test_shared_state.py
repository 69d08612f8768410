import threading

from analytics_ingest.shared_state import SharedState


class TestSharedState:

    def test_set_get_has_delete(self):
        state = SharedState()
        state.set("baseline:planner", {"mean": 0.9})

        assert state.has("baseline:planner")
        assert state.get("baseline:planner") == {"mean": 0.9}

        state.delete("baseline:planner")
        assert not state.has("baseline:planner")
        assert state.get("baseline:planner") is None

    def test_get_default_and_delete_missing(self):
        state = SharedState()

        assert state.get("missing", 42) == 42
        state.delete("missing")  # no error

    def test_entries_is_a_snapshot(self):
        state = SharedState()
        state.set("a", 1)
        entries = state.entries()
        state.set("b", 2)

        assert entries == [("a", 1)]
        assert sorted(state.entries()) == [("a", 1), ("b", 2)]

    def test_clear(self):
        state = SharedState()
        state.set("a", 1)
        state.clear()

        assert state.entries() == []

    def test_concurrent_writers(self):
        state = SharedState()

        def writer(prefix):
            for i in range(200):
                state.set(f"{prefix}:{i}", i)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(state.entries()) == 800
