"""Tests for binding resolved identities onto time-ranged atoms."""

from __future__ import annotations

import pytest

from py_clipcast.faces.atom_binding import TemporalAtomBinder, bind_atoms
from py_clipcast.faces.models import Atom

EMB = [1.0, 0.0]


def test_half_open_atom_boundaries(make_detection) -> None:
    detections = [
        make_detection("clip", ts, EMB, detection_id=f"d{i}", identity_id="ID_00001")
        for i, ts in enumerate([9.9, 10.0, 15.0, 20.0])
    ]

    atoms = bind_atoms(detections, [Atom(start_time=10.0, end_time=20.0)])

    assert len(atoms) == 1
    visible = atoms[0].visible_identities
    assert [v.identity_id for v in visible] == ["ID_00001"]
    assert visible[0].occurrence_count == 2


def test_detection_at_end_belongs_to_next_atom(make_detection) -> None:
    detections = [make_detection("clip", 20.0, EMB, identity_id="ID_00001")]

    atoms = bind_atoms(detections, [{"start": 10.0, "end": 20.0}, {"start": 20.0, "end": 30.0}])

    assert atoms[0].visible_identities == []
    assert atoms[1].visible_identities[0].occurrence_count == 1


def test_visible_identities_ordered_by_count_then_id(make_detection) -> None:
    detections = [
        make_detection("clip", 1.0, EMB, detection_id="a", identity_id="ID_00003", confidence=0.8),
        make_detection("clip", 2.0, EMB, detection_id="b", identity_id="ID_00002", confidence=0.9),
        make_detection("clip", 3.0, EMB, detection_id="c", identity_id="ID_00003", confidence=0.6),
        make_detection("clip", 4.0, EMB, detection_id="d", identity_id="ID_00001", confidence=0.7),
    ]

    atom = TemporalAtomBinder().bind(detections, [Atom(start_time=0.0, end_time=5.0)])[0]

    assert [(v.identity_id, v.occurrence_count) for v in atom.visible_identities] == [
        ("ID_00003", 2),
        ("ID_00001", 1),
        ("ID_00002", 1),
    ]
    assert atom.visible_identities[0].mean_confidence == pytest.approx(0.7)


def test_unassigned_detections_are_ignored(make_detection) -> None:
    detections = [
        make_detection("clip", 1.0, EMB, detection_id="a"),
        make_detection("clip", 2.0, EMB, detection_id="b", identity_id="ID_00001"),
    ]

    atom = bind_atoms(detections, [Atom(start_time=0.0, end_time=5.0)])[0]

    assert [(v.identity_id, v.occurrence_count) for v in atom.visible_identities] == [("ID_00001", 1)]


def test_zero_length_atom_is_empty(make_detection) -> None:
    detections = [make_detection("clip", 5.0, EMB, identity_id="ID_00001")]

    atom = bind_atoms(detections, [Atom(start_time=5.0, end_time=5.0)])[0]

    assert atom.visible_identities == []


def test_reversed_atom_is_empty_and_warns(make_detection, caplog) -> None:
    detections = [make_detection("clip", 5.0, EMB, identity_id="ID_00001")]

    with caplog.at_level("WARNING"):
        atom = bind_atoms(detections, [Atom(start_time=8.0, end_time=2.0)])[0]

    assert atom.visible_identities == []
    assert "ends before it starts" in caplog.text


def test_atoms_keep_order_and_opaque_fields(make_detection) -> None:
    detections = [make_detection("clip", 12.0, EMB, identity_id="ID_00001")]
    raw_atoms = [
        {"startTimeSeconds": 10.0, "endTimeSeconds": 20.0, "atom_id": "atom_2", "topic": "dinner party"},
        {"startTimeSeconds": 0.0, "endTimeSeconds": 10.0, "atom_id": "atom_1"},
    ]

    atoms = bind_atoms(detections, raw_atoms)

    dumped = [atom.model_dump() for atom in atoms]
    assert [d["atom_id"] for d in dumped] == ["atom_2", "atom_1"]
    assert dumped[0]["topic"] == "dinner party"
    assert dumped[0]["visible_identities"][0]["identity_id"] == "ID_00001"
    assert dumped[1]["visible_identities"] == []


def test_input_atoms_are_not_mutated(make_detection) -> None:
    detections = [make_detection("clip", 1.0, EMB, identity_id="ID_00001")]
    original = Atom(start_time=0.0, end_time=2.0)

    bound = bind_atoms(detections, [original])

    assert original.visible_identities == []
    assert len(bound[0].visible_identities) == 1


def test_no_atoms_or_no_detections(make_detection) -> None:
    assert bind_atoms([make_detection("clip", 1.0, EMB, identity_id="ID_00001")], []) == []
    assert bind_atoms([], [Atom(start_time=0.0, end_time=1.0)])[0].visible_identities == []
