import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Header, HTTPException, Request, status

from annuaire_api.core.auth import Principal, PrincipalType, parse_scope_header
from annuaire_api.core.config import Settings, get_settings


@dataclass(slots=True)
class MachineCredentialRecord:
    module_id: str
    scopes: set[str]
    key_hash: str


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def parse_machine_credentials(raw: str | None) -> dict[str, MachineCredentialRecord]:
    """Parse `{"module-id": {"key_sha256": "...", "scopes": [...]}}` into credential records.

    Scopes may be given as a list or as a comma separated string.
    """
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("machine credentials must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("machine credentials must be a JSON object")

    records: dict[str, MachineCredentialRecord] = {}
    for module_id, entry in payload.items():
        if not isinstance(entry, dict):
            continue
        key_hash = entry.get("key_sha256")
        if not isinstance(key_hash, str) or not key_hash:
            continue
        records[module_id] = MachineCredentialRecord(
            module_id=module_id,
            scopes=_coerce_scopes(entry.get("scopes")),
            key_hash=key_hash.lower(),
        )
    return records


async def get_machine_principal(
    request: Request,
    settings: Settings = Depends(get_settings),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    x_api_key = request.headers.get(settings.api_key_header)
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    try:
        credentials = parse_machine_credentials(settings.machine_credentials_json)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    record = credentials.get(x_module_id)
    if record is None or not hmac.compare_digest(record.key_hash, hash_api_key(x_api_key)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=record.module_id,
        scopes=set(record.scopes),
        actor_id=record.module_id,
    )


def _coerce_scopes(value: Any) -> set[str]:
    if isinstance(value, str):
        return parse_scope_header(value)
    if isinstance(value, list):
        return {item.strip() for item in value if isinstance(item, str) and item.strip()}
    return set()
