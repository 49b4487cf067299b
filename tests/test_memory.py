"""
Tests for per-call memory.
"""

import pytest

from src.callagent.memory import MemoryStore, Role


class TestFacts:
    def test_upsert_is_idempotent_last_write_wins(self):
        memory = MemoryStore()
        memory.upsert("budget", "400k")
        memory.upsert("budget", "500k")
        memory.upsert("budget", "500k")

        assert memory.facts == {"budget": "500k"}

    def test_fact_table_is_bounded_oldest_write_evicted(self):
        memory = MemoryStore(max_facts=2)
        memory.upsert("name", "Marie")
        memory.upsert("city", "Laval")
        memory.upsert("name", "Marie-Eve")
        memory.upsert("budget", "500k")

        assert memory.facts == {"name": "Marie-Eve", "budget": "500k"}

    def test_blank_key_is_ignored(self):
        memory = MemoryStore()
        memory.upsert("  ", "x")

        assert memory.facts == {}

    def test_facts_view_is_a_copy(self):
        memory = MemoryStore()
        memory.upsert("city", "Laval")
        memory.facts["city"] = "Montreal"

        assert memory.facts["city"] == "Laval"


class TestHistory:
    def test_history_capped_in_whole_exchanges(self):
        memory = MemoryStore(max_turns=2)
        for i in range(3):
            memory.append_history(Role.CALLER, f"caller {i}")
            memory.append_history(Role.AGENT, f"agent {i}")

        assert [m.text for m in memory.history] == ["caller 1", "agent 1", "caller 2", "agent 2"]

    def test_eviction_never_leaves_orphan_agent_message(self):
        memory = MemoryStore(max_turns=2)
        # A failed turn leaves a caller message without a reply.
        memory.append_history(Role.CALLER, "caller 0")
        memory.append_history(Role.AGENT, "agent 0")
        memory.append_history(Role.CALLER, "caller 1")
        memory.append_history(Role.CALLER, "caller 2")
        memory.append_history(Role.AGENT, "agent 2")

        history = memory.history
        assert len(history) <= memory.max_messages
        assert history[0].role == Role.CALLER
        assert [m.text for m in history] == ["caller 1", "caller 2", "agent 2"]

    def test_preamble_survives_eviction(self):
        memory = MemoryStore("You are a helpful assistant.", max_turns=1)
        for i in range(5):
            memory.append_history(Role.CALLER, f"caller {i}")
            memory.append_history(Role.AGENT, f"agent {i}")

        snapshot = memory.snapshot()
        assert snapshot.preamble == "You are a helpful assistant."
        assert [m.text for m in snapshot.history] == ["caller 4", "agent 4"]

    def test_snapshot_is_detached(self):
        memory = MemoryStore()
        memory.append_history(Role.CALLER, "hello")
        snapshot = memory.snapshot()
        memory.append_history(Role.AGENT, "hi")

        assert len(snapshot.history) == 1
        assert len(memory) == 2

    def test_max_turns_must_be_positive(self):
        with pytest.raises(ValueError):
            MemoryStore(max_turns=0)
