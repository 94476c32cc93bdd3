"""Contracts, their append-only versions, and task-contract dependencies."""

import logging
import sqlite3
from datetime import datetime

from room_orchestrator.core.events import publish_event
from room_orchestrator.core.rooms import get_room, slugify, unique_id
from room_orchestrator.db.models import Contract, ContractDependency, ContractVersion, Task

logger = logging.getLogger(__name__)

CONTRACT_TYPES = ("openapi", "typescript", "jsonschema", "protobuf", "other")
DEPENDENCY_KINDS = ("consumes", "produces", "modifies")


# ── Contracts ───────────────────────────────────────────────────────────────


def create_contract(
    db: sqlite3.Connection,
    room_id: str,
    name: str,
    contract_type: str = "other",
    initial_content: str = "",
    summary: str = "Initial version",
    proposed_by: str | None = None,
) -> Contract:
    """Create a contract together with its version 1."""
    if contract_type not in CONTRACT_TYPES:
        raise ValueError(f"Invalid contract type: {contract_type}")
    if not get_room(db, room_id):
        raise ValueError(f"Room not found: {room_id}")

    contract_id = unique_id(db, "contracts", slugify(name))
    db.execute(
        "INSERT INTO contracts (id, room_id, name, type) VALUES (?, ?, ?, ?)",
        (contract_id, room_id, name, contract_type),
    )
    db.commit()
    publish_version(
        db, contract_id, initial_content, summary, breaking=False, proposed_by=proposed_by
    )
    return get_contract(db, contract_id)


def get_contract(db: sqlite3.Connection, contract_id: str) -> Contract | None:
    row = db.execute("SELECT * FROM contracts WHERE id = ?", (contract_id,)).fetchone()
    if not row:
        return None
    return _row_to_contract(row)


def list_contracts(db: sqlite3.Connection, room_id: str) -> list[Contract]:
    rows = db.execute(
        "SELECT * FROM contracts WHERE room_id = ? ORDER BY name", (room_id,)
    ).fetchall()
    return [_row_to_contract(r) for r in rows]


def delete_contract(db: sqlite3.Connection, contract_id: str) -> bool:
    """Delete a contract and its versions. Dependency edges are left for the sweep."""
    cursor = db.execute("DELETE FROM contracts WHERE id = ?", (contract_id,))
    db.commit()
    return cursor.rowcount > 0


# ── Versions ────────────────────────────────────────────────────────────────


def get_current_version(db: sqlite3.Connection, contract_id: str) -> ContractVersion | None:
    row = db.execute(
        """SELECT v.* FROM contract_versions v
           JOIN contracts c ON c.current_version_id = v.id
           WHERE c.id = ?""",
        (contract_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_version(row)


def list_versions(db: sqlite3.Connection, contract_id: str) -> list[ContractVersion]:
    rows = db.execute(
        "SELECT * FROM contract_versions WHERE contract_id = ? ORDER BY version",
        (contract_id,),
    ).fetchall()
    return [_row_to_version(r) for r in rows]


def publish_version(
    db: sqlite3.Connection,
    contract_id: str,
    content: str,
    summary: str = "",
    breaking: bool | None = None,
    proposed_by: str | None = None,
) -> ContractVersion:
    """Append the next version and make it current.

    Unless ``breaking`` is explicitly True, the breaking flag comes from the
    type-specific heuristic comparing against the current version.
    """
    from room_orchestrator.core.impact import detect_breaking_change

    contract = get_contract(db, contract_id)
    if not contract:
        raise ValueError(f"Contract not found: {contract_id}")

    if not breaking:
        breaking = False
        previous = get_current_version(db, contract_id)
        if previous is not None:
            assessment = detect_breaking_change(contract.type, previous.content, content)
            breaking = assessment.breaking
            if breaking:
                logger.info(
                    "Contract %s change detected as breaking (%s): %s",
                    contract_id, assessment.strategy, ", ".join(assessment.evidence[:5]),
                )

    # Version numbers are allocated under a write lock so concurrent
    # publishers never produce gaps or duplicates.
    db.commit()
    db.execute("BEGIN IMMEDIATE")
    try:
        row = db.execute(
            "SELECT COALESCE(MAX(version), 0) AS v FROM contract_versions WHERE contract_id = ?",
            (contract_id,),
        ).fetchone()
        version = row["v"] + 1
        cursor = db.execute(
            """INSERT INTO contract_versions (contract_id, version, content, summary, breaking, proposed_by)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (contract_id, version, content, summary, 1 if breaking else 0, proposed_by),
        )
        version_id = cursor.lastrowid
        db.execute(
            "UPDATE contracts SET current_version_id = ? WHERE id = ?",
            (version_id, contract_id),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    row = db.execute("SELECT * FROM contract_versions WHERE id = ?", (version_id,)).fetchone()
    return _row_to_version(row)


def propose_change(
    db: sqlite3.Connection,
    contract_id: str,
    proposed_content: str,
    summary: str,
    proposed_by: str | None = None,
):
    """Record a proposed change without creating a version."""
    from room_orchestrator.core.notebook import add_entry

    contract = get_contract(db, contract_id)
    if not contract:
        raise ValueError(f"Contract not found: {contract_id}")

    event = publish_event(
        db,
        contract.room_id,
        "contract.proposed_change",
        {
            "contract_id": contract_id,
            "name": contract.name,
            "summary": summary,
            "proposed_by": proposed_by,
            "proposed_content": proposed_content,
        },
    )
    add_entry(
        db,
        contract.room_id,
        "decision",
        f'Proposed change to contract "{contract.name}"',
        f"{summary}\n\nProposed by: {proposed_by or 'unknown'}",
        contract_ids=[contract_id],
    )
    return event


# ── Task ↔ contract dependencies ───────────────────────────────────────────


def link_task(
    db: sqlite3.Connection,
    task_id: str,
    contract_id: str,
    kind: str = "consumes",
) -> ContractDependency:
    """Declare that a task consumes, produces or modifies a contract."""
    if kind not in DEPENDENCY_KINDS:
        raise ValueError(f"Invalid dependency kind: {kind}")
    if not db.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone():
        raise ValueError(f"Task not found: {task_id}")
    if not get_contract(db, contract_id):
        raise ValueError(f"Contract not found: {contract_id}")

    db.execute(
        "INSERT OR IGNORE INTO task_contract_dependencies (task_id, contract_id, kind) VALUES (?, ?, ?)",
        (task_id, contract_id, kind),
    )
    db.commit()
    row = db.execute(
        "SELECT * FROM task_contract_dependencies WHERE task_id = ? AND contract_id = ? AND kind = ?",
        (task_id, contract_id, kind),
    ).fetchone()
    return _row_to_dependency(row)


def dependent_tasks(db: sqlite3.Connection, contract_id: str) -> list[Task]:
    """Distinct tasks with any dependency on the contract."""
    from room_orchestrator.core.tasks import get_task

    rows = db.execute(
        "SELECT DISTINCT task_id FROM task_contract_dependencies WHERE contract_id = ? ORDER BY task_id",
        (contract_id,),
    ).fetchall()
    return [t for r in rows if (t := get_task(db, r["task_id"]))]


def list_contract_dependencies(db: sqlite3.Connection, room_id: str) -> list[ContractDependency]:
    rows = db.execute(
        """SELECT d.* FROM task_contract_dependencies d
           JOIN tasks t ON t.id = d.task_id
           WHERE t.room_id = ?
           ORDER BY d.id""",
        (room_id,),
    ).fetchall()
    return [_row_to_dependency(r) for r in rows]


def remove_dangling_dependencies(db: sqlite3.Connection, room_id: str) -> list[ContractDependency]:
    """Delete edges in a room whose contract no longer exists."""
    rows = db.execute(
        """SELECT d.* FROM task_contract_dependencies d
           JOIN tasks t ON t.id = d.task_id
           LEFT JOIN contracts c ON c.id = d.contract_id
           WHERE t.room_id = ? AND c.id IS NULL""",
        (room_id,),
    ).fetchall()
    removed = [_row_to_dependency(r) for r in rows]
    for dep in removed:
        db.execute("DELETE FROM task_contract_dependencies WHERE id = ?", (dep.id,))
        logger.warning(
            "Removed dangling contract dependency %s -> %s (%s)",
            dep.task_id, dep.contract_id, dep.kind,
        )
    db.commit()
    return removed


def _row_to_contract(row: sqlite3.Row) -> Contract:
    return Contract(
        id=row["id"],
        room_id=row["room_id"],
        name=row["name"],
        type=row["type"],
        current_version_id=row["current_version_id"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_version(row: sqlite3.Row) -> ContractVersion:
    return ContractVersion(
        id=row["id"],
        contract_id=row["contract_id"],
        version=row["version"],
        content=row["content"],
        summary=row["summary"] or "",
        breaking=bool(row["breaking"]),
        proposed_by=row["proposed_by"],
        created_at=_parse_dt(row["created_at"]),
    )


def _row_to_dependency(row: sqlite3.Row) -> ContractDependency:
    return ContractDependency(
        id=row["id"],
        task_id=row["task_id"],
        contract_id=row["contract_id"],
        kind=row["kind"],
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
