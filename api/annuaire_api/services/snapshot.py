from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Literal

EntryType = Literal["mailbox", "domain"]

ENTRY_TYPES = {"mailbox", "domain"}
MAILBOX_TYPE_CODES = {
    "personal": "PER",
    "organizational": "ORG",
    "applicative": "APP",
}


@dataclass(slots=True)
class DirectoryEntry:
    entry_id: str
    entry_type: str
    label: str
    canonical_fields: dict[str, str]
    content_hash: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "entry_type": self.entry_type,
            "label": self.label,
            "canonical_fields": dict(self.canonical_fields),
            "content_hash": self.content_hash,
        }


def is_publishable(record: dict[str, Any] | None) -> bool:
    """A local record is published only while active, visible and attached to an active domain."""
    if not record:
        return False
    if record.get("status", "active") != "active":
        return False
    if record.get("entry_type") == "mailbox":
        if record.get("hide_from_directory"):
            return False
        domain = record.get("domain") or {}
        return domain.get("status", "active") == "active"
    return record.get("entry_type") == "domain"


def build_entry(record: dict[str, Any], *, operator_id: str) -> DirectoryEntry:
    entry_type = record.get("entry_type")
    if entry_type == "mailbox":
        fields = _mailbox_fields(record, operator_id=operator_id)
        label = _text(record.get("email"))
    elif entry_type == "domain":
        fields = _domain_fields(record, operator_id=operator_id)
        label = _text(record.get("domain_name"))
    else:
        raise ValueError(f"unsupported entry type: {entry_type!r}")

    return DirectoryEntry(
        entry_id=str(record["entry_id"]),
        entry_type=entry_type,
        label=label or str(record["entry_id"]),
        canonical_fields=fields,
        content_hash=content_hash(fields),
    )


def content_hash(fields: dict[str, str]) -> str:
    serialized = json.dumps(list(fields.items()), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _mailbox_fields(record: dict[str, Any], *, operator_id: str) -> dict[str, str]:
    mailbox_type = _text(record.get("mailbox_type")) or "personal"
    domain = record.get("domain") or {}
    fields: dict[str, str] = {
        "idOperateur": operator_id,
        "typeBAL": MAILBOX_TYPE_CODES.get(mailbox_type, mailbox_type.upper()),
        "adresseBAL": _text(record.get("email")).lower(),
    }

    if mailbox_type == "personal":
        owner = record.get("owner") or {}
        rpps_id = _text(owner.get("rpps_id"))
        fields["idNational"] = rpps_id or _text(owner.get("adeli_id"))
        fields["typeIdNational"] = "RPPS" if rpps_id else "ADELI"
        fields["nom"] = _text(owner.get("last_name"))
        fields["prenom"] = _text(owner.get("first_name"))
        fields["civilite"] = _text(owner.get("civility")) or "M"
        fields["profession"] = _text(owner.get("profession"))
        fields["specialite"] = _text(owner.get("specialty"))
    elif mailbox_type == "organizational":
        fields["idFiness"] = _text(domain.get("finess_juridique"))
        fields["idFinessGeo"] = _text(domain.get("finess_geographique"))
        fields["raisonSociale"] = _text(domain.get("organization_name"))
        fields["service"] = _text(record.get("service_name"))
        fields["fonction"] = _text(record.get("function_name"))
    else:
        fields["idFiness"] = _text(domain.get("finess_juridique"))
        fields["raisonSociale"] = _text(domain.get("organization_name"))
        fields["nomApplication"] = _text(record.get("application_name"))
        fields["editeur"] = _text(record.get("editor_name"))
        fields["versionApplication"] = _text(record.get("application_version"))

    fields["domaine"] = _text(domain.get("domain_name")).lower()
    return fields


def _domain_fields(record: dict[str, Any], *, operator_id: str) -> dict[str, str]:
    return {
        "idOperateur": operator_id,
        "typeEntree": "DOMAINE",
        "domaine": _text(record.get("domain_name")).lower(),
        "raisonSociale": _text(record.get("organization_name")),
        "idFiness": _text(record.get("finess_juridique")),
        "idFinessGeo": _text(record.get("finess_geographique")),
    }


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
