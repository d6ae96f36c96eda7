from pathlib import Path

import allure
from sqlalchemy import text

from tasker.engine.repository import EngineRepository
from tasker.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Continuation Engine"),
    allure.feature("Durable Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = EngineRepository(db_path)
    assert current_revision(db_path) is None
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('task_runs', 'stack_runs', 'task_locks',
                               'task_functions', 'stack_run_events')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        dispatch_index = connection.execute(
            text(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'index' AND name = 'idx_stack_runs_dispatch'",
            ),
        ).scalar_one_or_none()
    repository.close()

    assert current_revision(db_path) == "20261019_0002"
    assert list(tables) == [
        "stack_run_events",
        "stack_runs",
        "task_functions",
        "task_locks",
        "task_runs",
    ]
    assert dispatch_index == "idx_stack_runs_dispatch"
