"""Registered usability tests and their tasks."""

import json
import uuid
from typing import List, Optional

import ibis

from uxprobe.schemas import TaskDefinition, TestDefinition
from uxprobe.server.store import nullable, transaction


def new_test_id() -> str:
    return f"test-{uuid.uuid4().hex[:12]}"


def create_test(conn: ibis.BaseBackend, definition: TestDefinition) -> TestDefinition:
    """Stores a test and its tasks in one transaction and returns it with ids set."""
    test_id = definition.id or new_test_id()
    tasks = [
        task.model_copy(
            update={
                "id": task.id or f"{test_id}-task-{index}",
                "order_index": index,
            }
        )
        for index, task in enumerate(definition.tasks)
    ]
    with transaction(conn) as cur:
        cur.execute(
            """
            INSERT INTO tests (
                id, project_id, name, description, instructions,
                target_url, variants, is_active
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                test_id,
                definition.project_id,
                definition.name,
                definition.description,
                definition.instructions,
                definition.target_url,
                json.dumps(definition.variants),
                definition.is_active,
            ],
        )
        for task in tasks:
            cur.execute(
                """
                INSERT INTO tasks (id, test_id, title, description, order_index)
                VALUES (?, ?, ?, ?, ?)
                """,
                [task.id, test_id, task.title, task.description, task.order_index],
            )
    return definition.model_copy(update={"id": test_id, "tasks": tasks})


def _to_definition(row: dict, tasks: List[TaskDefinition]) -> TestDefinition:
    return TestDefinition(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        description=nullable(row["description"]),
        instructions=nullable(row["instructions"]),
        target_url=nullable(row["target_url"]),
        variants=json.loads(row["variants"] or '["A"]'),
        is_active=bool(row["is_active"]),
        tasks=tasks,
    )


def get_test(conn: ibis.BaseBackend, test_id: str) -> Optional[TestDefinition]:
    """A test with its tasks in order, or None."""
    tests = conn.table("tests")
    rows = tests.filter(tests["id"] == test_id).limit(1).execute()
    if rows.empty:
        return None

    task_table = conn.table("tasks")
    task_rows = (
        task_table.filter(task_table.test_id == test_id)
        .order_by(task_table.order_index)
        .execute()
        .to_dict("records")
    )
    tasks = [
        TaskDefinition(
            id=t["id"],
            title=t["title"],
            description=nullable(t["description"]),
            order_index=int(t["order_index"]),
        )
        for t in task_rows
    ]
    return _to_definition(rows.to_dict("records")[0], tasks)


def list_tests(
    conn: ibis.BaseBackend, project_id: Optional[str] = None
) -> List[TestDefinition]:
    """Tests without their tasks, newest first."""
    tests = conn.table("tests")
    if project_id:
        tests = tests.filter(tests.project_id == project_id)
    rows = tests.order_by(ibis.desc("created_at")).execute().to_dict("records")
    return [_to_definition(row, []) for row in rows]
