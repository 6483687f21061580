from __future__ import annotations

from typing import Any

import pytest

from annuaire_api.services.snapshot import build_entry, content_hash, is_publishable


def _mailbox(**overrides: Any) -> dict[str, Any]:
    record: dict[str, Any] = {
        "entry_id": "mbx-1",
        "entry_type": "mailbox",
        "email": "Dr.Martin@Clinique-Exemple.mssante.fr",
        "mailbox_type": "personal",
        "hide_from_directory": False,
        "status": "active",
        "owner": {
            "rpps_id": "10001234567",
            "last_name": "Martin",
            "first_name": "Claire",
            "civility": "MME",
            "profession": "Medecin",
            "specialty": "Cardiologie",
        },
        "domain": {
            "domain_name": "clinique-exemple.mssante.fr",
            "organization_name": "Clinique Exemple",
            "finess_juridique": "750000001",
            "status": "active",
        },
    }
    record.update(overrides)
    return record


def test_build_entry_is_deterministic() -> None:
    first = build_entry(_mailbox(), operator_id="OP-1")
    second = build_entry(_mailbox(), operator_id="OP-1")

    assert first.content_hash == second.content_hash
    assert list(first.canonical_fields) == list(second.canonical_fields)
    assert first.canonical_fields["adresseBAL"] == "dr.martin@clinique-exemple.mssante.fr"
    assert first.canonical_fields["typeBAL"] == "PER"
    assert first.canonical_fields["typeIdNational"] == "RPPS"
    assert first.label == "Dr.Martin@Clinique-Exemple.mssante.fr"
    assert len(first.content_hash) == 64


def test_content_hash_changes_with_any_canonical_field() -> None:
    base = build_entry(_mailbox(), operator_id="OP-1")
    renamed = build_entry(_mailbox(owner={**_mailbox()["owner"], "last_name": "Durand"}), operator_id="OP-1")
    other_operator = build_entry(_mailbox(), operator_id="OP-2")

    assert renamed.content_hash != base.content_hash
    assert other_operator.content_hash != base.content_hash


def test_content_hash_depends_on_field_order() -> None:
    assert content_hash({"a": "1", "b": "2"}) != content_hash({"b": "2", "a": "1"})


def test_personal_mailbox_falls_back_to_adeli() -> None:
    entry = build_entry(
        _mailbox(owner={"adeli_id": "759912345", "last_name": "Petit", "first_name": "Luc"}),
        operator_id="OP-1",
    )
    assert entry.canonical_fields["idNational"] == "759912345"
    assert entry.canonical_fields["typeIdNational"] == "ADELI"


def test_organizational_mailbox_uses_structure_fields() -> None:
    entry = build_entry(
        _mailbox(mailbox_type="organizational", service_name="Cardiologie", function_name="Secretariat"),
        operator_id="OP-1",
    )
    assert entry.canonical_fields["typeBAL"] == "ORG"
    assert entry.canonical_fields["idFiness"] == "750000001"
    assert entry.canonical_fields["service"] == "Cardiologie"
    assert "nom" not in entry.canonical_fields


def test_domain_entry() -> None:
    entry = build_entry(
        {
            "entry_id": "dom-1",
            "entry_type": "domain",
            "domain_name": "Clinique-Exemple.mssante.fr",
            "organization_name": "Clinique Exemple",
            "finess_juridique": "750000001",
            "status": "active",
        },
        operator_id="OP-1",
    )
    assert entry.entry_type == "domain"
    assert entry.label == "Clinique-Exemple.mssante.fr"
    assert entry.canonical_fields["domaine"] == "clinique-exemple.mssante.fr"


def test_unknown_entry_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_entry({"entry_id": "x", "entry_type": "user"}, operator_id="OP-1")


def test_publishability_rules() -> None:
    assert is_publishable(_mailbox())
    assert not is_publishable(None)
    assert not is_publishable(_mailbox(hide_from_directory=True))
    assert not is_publishable(_mailbox(status="suspended"))
    assert not is_publishable(_mailbox(domain={"domain_name": "x.fr", "status": "suspended"}))
    assert is_publishable({"entry_id": "dom-1", "entry_type": "domain", "status": "active"})
    assert not is_publishable({"entry_id": "dom-1", "entry_type": "domain", "status": "suspended"})
