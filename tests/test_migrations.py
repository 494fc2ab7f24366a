from pathlib import Path

import allure
from sqlalchemy import text

from bounty_settlement.repository import SettlementRepository
from bounty_settlement.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Storage"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = SettlementRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        assert version == "20261018_0001"

        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name NOT IN ('alembic_version')
                  AND name NOT LIKE 'sqlite_%'
                ORDER BY name
                """,
            ),
        ).scalars().all()
    assert tables == [
        "executions",
        "payment_events",
        "submissions",
        "task_timeline",
        "tasks",
        "verification_audits",
    ]
    repository.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    assert current_revision(db_path) is None
    for _ in range(2):
        repository = SettlementRepository(db_path)
        repository.init_schema()
        repository.close()
    assert current_revision(db_path) == "20261018_0001"
