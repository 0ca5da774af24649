"""Tests for clip-level identity resolution.

Verifies:
1. A fresh registry creates one identity per cluster
2. A later clip of the same person merges into the existing identity
3. Re-running an already resolved clip is a no-op replay; a changed clip
   first takes its earlier merges back out
4. Failures leave the registry untouched
5. Clips resolved concurrently (one handle or several on one file) all commit
"""

from __future__ import annotations

import threading

import pytest

from py_clipcast.errors import DimensionMismatch, RegistryUnavailable
from py_clipcast.faces.identity_registry import IdentityRegistry
from py_clipcast.faces.models import ClusteringConfig, MatchingConfig, ResolutionState
from py_clipcast.faces.registry_store import InMemoryIdentityStore, JsonIdentityStore
from py_clipcast.faces.resolver import IdentityResolver, detection_fingerprint, resolve_clip_identities


class FailingStore(InMemoryIdentityStore):
    def save(self, document) -> None:
        raise RegistryUnavailable("store offline")


def test_single_person_creates_one_identity(person_bases, make_clip) -> None:
    bases = person_bases(1)
    detections = make_clip("clip_a", bases, {0: 30})
    registry = IdentityRegistry()

    result = resolve_clip_identities("clip_a", detections, registry)

    assert len(result.clusters) == 1
    assert result.created_identity_ids == ["ID_00001"]
    assert result.matched_identity_ids == []
    assert len(registry) == 1
    identity = registry.get("ID_00001")
    assert identity.count == 30
    assert identity.first_seen_clip_id == "clip_a"
    assert {d.identity_id for d in result.detections} == {"ID_00001"}
    assert len(result.assignments()) == 30


def test_two_people_create_two_identities(person_bases, make_clip) -> None:
    bases = person_bases(2)
    detections = make_clip("clip_b", bases, {0: 15, 1: 15})
    registry = IdentityRegistry()

    result = IdentityResolver(registry).resolve_clip("clip_b", detections)

    assert result.created_identity_ids == ["ID_00001", "ID_00002"]
    assert [registry.get(i).count for i in result.identity_ids] == [15, 15]
    mapping = result.identity_by_detection()
    for det in detections:
        person = det.detection_id.split("_")[2]
        assert mapping[det.detection_id] == ("ID_00001" if person == "p0" else "ID_00002")


def test_same_person_in_later_clip_merges(person_bases, make_clip) -> None:
    bases = person_bases(1)
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)
    resolver.resolve_clip("clip_1", make_clip("clip_1", bases, {0: 20}))

    result = resolver.resolve_clip("clip_2", make_clip("clip_2", bases, {0: 12}, start=50.0))

    assert result.created_identity_ids == []
    assert result.matched_identity_ids == ["ID_00001"]
    assert result.clusters[0].outcome == ResolutionState.MATCHED
    assert result.clusters[0].state == ResolutionState.ASSIGNED
    assert result.clusters[0].similarity > 0.65
    assert len(registry) == 1
    assert registry.get("ID_00001").count == 32
    assert registry.get_identity_clips("ID_00001") == ["clip_1", "clip_2"]


def test_new_person_in_later_clip_creates_new_identity(person_bases, make_clip) -> None:
    bases = person_bases(2)
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)
    resolver.resolve_clip("clip_1", make_clip("clip_1", bases, {0: 10}))

    result = resolver.resolve_clip("clip_2", make_clip("clip_2", bases, {0: 5, 1: 5}))

    assert result.matched_identity_ids == ["ID_00001"]
    assert result.created_identity_ids == ["ID_00002"]
    assert registry.get("ID_00001").count == 15


def test_created_identity_uses_best_member_as_representative(person_bases, person_embeddings, make_detection) -> None:
    base = person_bases(1)[0]
    embeddings = person_embeddings(base, 5)
    detections = [
        make_detection("clip_r", float(i), emb, detection_id=f"d{i}", confidence=0.99 if i == 3 else 0.8)
        for i, emb in enumerate(embeddings)
    ]
    registry = IdentityRegistry()

    IdentityResolver(registry).resolve_clip("clip_r", detections)

    assert registry.get("ID_00001").representative_detection_id == "d3"


def test_resolving_same_clip_twice_replays(person_bases, make_clip) -> None:
    bases = person_bases(2)
    detections = make_clip("clip_a", bases, {0: 8, 1: 6})
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)

    first = resolver.resolve_clip("clip_a", detections)
    counts_before = {i.identity_id: i.count for i in registry.list_identities()}
    second = resolver.resolve_clip("clip_a", detections)

    assert second.replayed is True
    assert second.identity_by_detection() == first.identity_by_detection()
    assert [d.cluster_id for d in second.detections] == [d.cluster_id for d in first.detections]
    assert {i.identity_id: i.count for i in registry.list_identities()} == counts_before
    assert registry.get_clip_assignments("clip_a") == first.identity_by_detection()


def test_fingerprint_depends_on_parameters(person_bases, make_clip) -> None:
    detections = make_clip("clip_f", person_bases(1), {0: 3})
    base = detection_fingerprint(detections, ClusteringConfig(), MatchingConfig())

    assert detection_fingerprint(list(reversed(detections)), ClusteringConfig(), MatchingConfig()) == base
    assert detection_fingerprint(detections, ClusteringConfig(eps=0.2), MatchingConfig()) != base
    assert detection_fingerprint(detections[:2], ClusteringConfig(), MatchingConfig()) != base


def test_dimension_mismatch_with_registry_commits_nothing(person_bases, make_clip, make_detection) -> None:
    registry = IdentityRegistry()
    IdentityResolver(registry).resolve_clip("clip_1", make_clip("clip_1", person_bases(1), {0: 4}))

    bad = [make_detection("clip_2", 0.0, [1.0, 0.0, 0.0, 0.0], detection_id="x")]
    with pytest.raises(DimensionMismatch):
        IdentityResolver(registry).resolve_clip("clip_2", bad)

    assert len(registry) == 1
    assert registry.get("ID_00001").count == 4
    assert registry.clip_entry("clip_2") is None


def test_store_failure_rolls_back_whole_clip(person_bases, make_clip) -> None:
    registry = IdentityRegistry(FailingStore())

    with pytest.raises(RegistryUnavailable):
        IdentityResolver(registry).resolve_clip("clip_a", make_clip("clip_a", person_bases(2), {0: 3, 1: 3}))

    assert len(registry) == 0
    assert registry.clip_entry("clip_a") is None


def test_empty_clip_resolves_to_nothing() -> None:
    registry = IdentityRegistry()

    result = IdentityResolver(registry).resolve_clip("clip_empty", [])

    assert result.clusters == []
    assert result.detections == []
    assert len(registry) == 0
    assert registry.clip_entry("clip_empty") is not None


def test_accepts_raw_detection_dicts(person_bases, person_embeddings) -> None:
    base = person_bases(1)[0]
    raw = [
        {
            "timestampSeconds": 0.5 * i,
            "bbox": {"x": 0.1, "y": 0.2, "w": 0.2, "h": 0.3},
            "embedding": emb,
            "confidence": 0.9,
        }
        for i, emb in enumerate(person_embeddings(base, 3))
    ]

    result = IdentityResolver(IdentityRegistry()).resolve_clip("clip_raw", raw)

    assert [d.detection_id for d in result.detections] == ["clip_raw_d00000", "clip_raw_d00001", "clip_raw_d00002"]
    assert all(d.clip_id == "clip_raw" for d in result.detections)


def test_foreign_clip_detection_rejected(make_detection) -> None:
    det = make_detection("other_clip", 0.0, [1.0, 0.0])
    with pytest.raises(ValueError, match="belongs to clip other_clip"):
        IdentityResolver(IdentityRegistry()).resolve_clip("clip_a", [det])


def test_changed_clip_retracts_earlier_merges(person_bases, make_clip, caplog) -> None:
    bases = person_bases(1)
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)
    clip_a = make_clip("clip_a", bases, {0: 10})
    resolver.resolve_clip("clip_a", clip_a)
    resolver.resolve_clip("clip_b", make_clip("clip_b", bases, {0: 5}, start=20.0))
    assert registry.get("ID_00001").count == 15

    with caplog.at_level("WARNING"):
        result = resolver.resolve_clip("clip_a", clip_a[:8])

    assert result.replayed is False
    assert result.matched_identity_ids == ["ID_00001"]
    identity = registry.get("ID_00001")
    # 15 - 10 from the first run of clip_a + 8 from the second
    assert identity.count == 13
    assert identity.clip_ids == ["clip_b", "clip_a"]
    assert identity.first_seen_clip_id == "clip_b"
    assert registry.get_clip_assignments("clip_a") == {d.detection_id: "ID_00001" for d in clip_a[:8]}
    assert registry.clip_entry("clip_a").contributions["ID_00001"].count == 8
    assert "retracted its earlier merges from 1 identities" in caplog.text


def test_changed_clip_drops_identities_only_it_created(person_bases, make_clip) -> None:
    bases = person_bases(2)
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)
    resolver.resolve_clip("clip_x", make_clip("clip_x", bases, {0: 4}))

    result = resolver.resolve_clip("clip_x", make_clip("clip_x", bases, {1: 3}))

    assert result.created_identity_ids == ["ID_00002"]
    assert "ID_00001" not in registry
    assert len(registry) == 1
    assert registry.get("ID_00002").count == 3


def test_legacy_ledger_entry_warns_about_double_counting(person_bases, make_clip, caplog) -> None:
    bases = person_bases(1)
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)
    clip_a = make_clip("clip_a", bases, {0: 6})
    resolver.resolve_clip("clip_a", clip_a)
    # Entry written before contributions were tracked
    with registry.write_section("clip_a") as txn:
        entry = txn.clip_entry("clip_a")
        txn.record_clip("clip_a", entry.fingerprint, entry.assignments, entry.clusters)
    assert registry.clip_entry("clip_a").contributions == {}

    with caplog.at_level("WARNING"):
        resolver.resolve_clip("clip_a", clip_a[:4])

    assert registry.get("ID_00001").count == 10
    assert "will include both runs" in caplog.text


def _resolve_in_threads(clips, resolve) -> list:
    errors = []

    def _run(clip_id: str) -> None:
        try:
            resolve(clip_id, clips[clip_id])
        except Exception as exc:  # collected for the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=_run, args=(clip_id,)) for clip_id in clips]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return errors


def test_concurrent_clips_on_one_registry_all_commit(person_bases, make_clip) -> None:
    bases = person_bases(6)
    clips = {f"clip_{n}": make_clip(f"clip_{n}", bases, {n: 6}) for n in range(6)}
    registry = IdentityRegistry()
    resolver = IdentityResolver(registry)

    errors = _resolve_in_threads(clips, resolver.resolve_clip)

    assert errors == []
    identities = registry.list_identities()
    assert [identity.identity_id for identity in identities] == [f"ID_{n:05d}" for n in range(1, 7)]
    assert [identity.count for identity in identities] == [6] * 6
    assert sorted(identity.first_seen_clip_id for identity in identities) == sorted(clips)
    for clip_id, detections in clips.items():
        assert len(registry.get_clip_assignments(clip_id)) == len(detections)


def test_concurrent_clips_on_separate_handles_share_one_file(tmp_path, person_bases, make_clip) -> None:
    path = tmp_path / "registry" / "identities.json"
    bases = person_bases(6)
    clips = {f"clip_{n}": make_clip(f"clip_{n}", bases, {n: 4}) for n in range(6)}

    def _resolve(clip_id, detections):
        # Fresh handle per clip, as a separate worker process would have
        IdentityResolver(IdentityRegistry(JsonIdentityStore(path))).resolve_clip(clip_id, detections)

    errors = _resolve_in_threads(clips, _resolve)

    assert errors == []
    final = IdentityRegistry(JsonIdentityStore(path))
    assert len(final) == 6
    assert sorted(identity.first_seen_clip_id for identity in final.list_identities()) == sorted(clips)
    for clip_id in clips:
        assert final.clip_entry(clip_id) is not None
    assert list(path.parent.glob("*.tmp")) == []
