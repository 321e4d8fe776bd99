from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from icn.node.errors import DagError
from icn.node.ledger import VertexLedger, fingerprint, fingerprint_file
from icn.node.state import NodeStateManager


def _ledger(root: Path) -> VertexLedger:
    state = NodeStateManager(root / "state.json", root / "backups")
    state.load()
    return VertexLedger(state, root / "logs" / "dag.log")


@pytest.fixture
def ledger(tmp_path: Path) -> VertexLedger:
    return _ledger(tmp_path)


# =============================================================================
# Fingerprints
# =============================================================================

class TestFingerprint:
    def test_known_digest(self):
        assert fingerprint(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    @given(data=st.binary(max_size=512))
    def test_deterministic(self, data: bytes):
        assert fingerprint(data) == fingerprint(bytes(data))

    def test_file_matches_bytes(self, tmp_path: Path):
        path = tmp_path / "p.dsl"
        path.write_bytes(b"proposal { title: x }")
        assert fingerprint_file(path) == fingerprint(b"proposal { title: x }")


# =============================================================================
# Append
# =============================================================================

class TestAppend:
    """Tests for appending vertices."""

    def test_first_vertex_is_root(self, ledger: VertexLedger):
        stored = ledger.append(VertexLedger.new_entry("1", "aa"))
        assert stored.parents == ()
        assert len(ledger) == 1

    def test_vertices_link_to_previous_tip(self, ledger: VertexLedger):
        first = ledger.append(VertexLedger.new_entry("1", "aa"))
        second = ledger.append(VertexLedger.new_entry("2", "bb"))
        assert second.parents == (first.id,)
        assert ledger.tip() == second

    def test_engine_vertex_id_is_kept(self, ledger: VertexLedger):
        stored = ledger.append(VertexLedger.new_entry("1", "aa", vertex_id="vtx-1"))
        assert stored.id == "vtx-1"
        assert ledger.find("vtx-1") == stored

    def test_duplicate_id_rejected(self, ledger: VertexLedger):
        ledger.append(VertexLedger.new_entry("1", "aa", vertex_id="dup"))
        with pytest.raises(DagError):
            ledger.append(VertexLedger.new_entry("2", "bb", vertex_id="dup"))
        assert len(ledger) == 1

    def test_unknown_parent_rejected(self, ledger: VertexLedger):
        entry = dataclasses.replace(VertexLedger.new_entry("1", "aa"), parents=("ghost",))
        with pytest.raises(DagError):
            ledger.append(entry)

    def test_append_can_mark_proposal_executed(self, ledger: VertexLedger, tmp_path: Path):
        ledger.append(VertexLedger.new_entry("42", "aa"), executed_proposal_id="42")

        reloaded = NodeStateManager(tmp_path / "state.json", tmp_path / "backups")
        state = reloaded.load()
        assert state.executed_proposals == ["42"]
        assert len(state.dag_vertices) == 1
        assert state.last_executed_block == 1

    def test_audit_log_written(self, ledger: VertexLedger):
        stored = ledger.append(VertexLedger.new_entry("42", "cafe"))
        log = ledger.read_log()
        assert f"Vertex ID: {stored.id}, Proposal: 42, Hash: cafe" in log

    def test_read_log_without_entries(self, ledger: VertexLedger):
        assert ledger.read_log() == "No DAG logs found"

    @given(proposal_ids=st.lists(st.text(alphabet="abc123", min_size=1, max_size=4), max_size=12))
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
    def test_append_only(self, tmp_path_factory, proposal_ids):
        ledger = _ledger(tmp_path_factory.mktemp("ledger"))
        history = []
        for pid in proposal_ids:
            before = ledger.all()
            stored = ledger.append(VertexLedger.new_entry(pid, fingerprint(pid.encode())))
            after = ledger.all()

            assert len(after) == len(before) + 1
            assert after[: len(before)] == before
            assert after[-1] == stored
            history.append(stored)
        assert ledger.all() == history


# =============================================================================
# Read side
# =============================================================================

class TestReadSide:
    """Tests for summary() and describe()."""

    def test_empty_summary(self, ledger: VertexLedger):
        info = ledger.summary()
        assert info.vertex_count == 0
        assert info.root_count == 0
        assert info.tips == []

    def test_chain_summary(self, ledger: VertexLedger):
        first = ledger.append(VertexLedger.new_entry("1", "aa"))
        ledger.append(VertexLedger.new_entry("2", "bb"))
        third = ledger.append(VertexLedger.new_entry("3", "cc"))

        info = ledger.summary()
        assert info.vertex_count == 3
        assert info.root_count == 1
        assert info.tip_count == 1
        assert info.tips == [third.id]
        assert info.genesis_time == first.timestamp
        assert info.latest_update == third.timestamp

    def test_describe(self, ledger: VertexLedger):
        first = ledger.append(VertexLedger.new_entry("1", "aa"))
        second = ledger.append(VertexLedger.new_entry("2", "bb"))

        view = ledger.describe(first.id)
        assert view["height"] == 0
        assert view["parents"] == []
        assert view["children"] == [second.id]

        view = ledger.describe(second.id)
        assert view["height"] == 1
        assert view["parents"] == [first.id]
        assert view["children"] == []
        assert view["proposal_id"] == "2"

    def test_describe_unknown(self, ledger: VertexLedger):
        with pytest.raises(DagError):
            ledger.describe("nope")
