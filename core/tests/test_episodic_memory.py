"""Tests for cross-run Episodic Memory and its similarity ranking."""

from reactree.memory.episodic import EpisodicMemoryStore, jaccard, tokenize


def test_tokenize_drops_stop_words_and_punctuation():
    assert tokenize("Add the User model, with Devise!") == {"add", "user", "model", "devise"}


def test_jaccard():
    assert jaccard({"a", "b"}, {"b", "c"}) == 1 / 3
    assert jaccard(set(), {"a"}) == 0.0


class TestQuerySimilar:
    def test_ranked_by_similarity(self):
        store = EpisodicMemoryStore()
        store.record("add billing page")
        store.record("add user authentication with devise", patterns=["devise"])
        store.record("user authentication")

        results = store.query_similar("user authentication", top_k=2)

        assert [r.subgoal for r in results] == ["user authentication", "add user authentication with devise"]

    def test_ties_prefer_most_recent(self):
        store = EpisodicMemoryStore()
        store.record("deploy api", learnings=["first"])
        store.record("deploy api", learnings=["second"])

        [best] = store.query_similar("deploy api", top_k=1)
        assert best.learnings == ["second"]

    def test_unrelated_records_are_excluded(self):
        store = EpisodicMemoryStore()
        store.record("configure redis cache")
        assert store.query_similar("user authentication") == []

    def test_outcome_filter(self):
        store = EpisodicMemoryStore()
        store.record("user signup", outcome="failure")
        store.record("user signup form", outcome="success")

        results = store.query_similar("user signup", outcome="success")
        assert [r.subgoal for r in results] == ["user signup form"]


def test_records_survive_restart(tmp_path):
    path = tmp_path / "episodic_memory.jsonl"
    EpisodicMemoryStore(path).record("add search", patterns=["elasticsearch"], learnings=["reindex after deploy"])

    store = EpisodicMemoryStore(path)

    assert len(store) == 1
    [record] = store.all()
    assert record.patterns_applied == ["elasticsearch"]
    assert record.learnings == ["reindex after deploy"]
    assert record.outcome == "success"
