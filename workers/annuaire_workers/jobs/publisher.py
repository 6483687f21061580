from __future__ import annotations

import logging
from typing import Any

from annuaire_workers.services.directory_client import (
    DirectoryClient,
    PermanentDirectoryError,
    TransientDirectoryError,
)

logger = logging.getLogger(__name__)


async def process_task(claimed: dict[str, Any], directory: DirectoryClient) -> dict[str, Any]:
    """Run one claimed publication against the directory and classify the outcome.

    `claimed` is the claim response: the task plus, for create/update, the
    entry snapshot taken at claim time. The returned mapping is the body of
    the result report.
    """
    task = claimed["task"]
    entry = claimed.get("entry")
    operation = task["operation"]

    try:
        if operation == "delete":
            await directory.unpublish(task["entry_id"])
            return {"outcome": "ok", "error": None, "content_hash": None}
        if entry is None:
            return {
                "outcome": "permanent_error",
                "error": f"missing entry snapshot for {operation}",
                "content_hash": None,
            }
        await directory.publish(entry)
        return {"outcome": "ok", "error": None, "content_hash": entry["content_hash"]}
    except TransientDirectoryError as exc:
        logger.warning("transient directory failure task_id=%s: %s", task["id"], exc)
        return {"outcome": "transient_error", "error": str(exc), "content_hash": None}
    except PermanentDirectoryError as exc:
        logger.warning("directory rejected entry task_id=%s: %s", task["id"], exc)
        return {"outcome": "permanent_error", "error": str(exc), "content_hash": None}
