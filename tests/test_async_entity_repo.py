"""Tests for the asyncio/asyncpg repository (driver mocked)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from exceptions import ArgumentError, OperationCancelled, PgMapperError, ResourceStateError
from repositories.async_entity_repo import AsyncEntityRepository, affected_rows, prepare_async_sql
from sample_entities import Counter, Sale, Teacher
from utils.cancellation import CancellationToken


@pytest.fixture
async def repo(db_config, apg_conn) -> AsyncEntityRepository:
    repository = AsyncEntityRepository(db_config)
    await repository.connect()
    return repository


async def _hang(*args, **kwargs):
    await asyncio.sleep(10)


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


class TestConnection:
    async def test_connect(self, db_config, apg_conn) -> None:
        repo = AsyncEntityRepository(db_config)
        await repo.connect()
        apg_conn.connect_mock.assert_awaited_once_with(
            host="localhost", port=5432, user="tester", password="secret", database="school"
        )
        assert repo.is_open

    async def test_close_twice(self, repo, apg_conn) -> None:
        await repo.close()
        apg_conn.close.assert_awaited_once()
        with pytest.raises(ResourceStateError):
            await repo.close()

    async def test_operation_before_connect(self, db_config, apg_conn) -> None:
        with pytest.raises(ResourceStateError):
            await AsyncEntityRepository(db_config).fetch(Teacher)

    async def test_context_manager(self, db_config, apg_conn) -> None:
        async with AsyncEntityRepository(db_config) as repo:
            assert repo.is_open
        apg_conn.close.assert_awaited_once()

    async def test_connect_cancelled(self, db_config, apg_conn) -> None:
        token = CancellationToken()
        token.cancel()
        repo = AsyncEntityRepository(db_config)
        with pytest.raises(OperationCancelled):
            await repo.connect(cancel=token)
        assert not repo.is_open


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestFetch:
    async def test_fetch_default_sql(self, repo, apg_conn) -> None:
        apg_conn.fetch.return_value = [{"id": 1, "first_name": "Ada"}, {"id": 2, "first_name": "Grace"}]

        teachers = await repo.fetch(Teacher)

        apg_conn.fetch.assert_awaited_once_with("SELECT * FROM teachers")
        assert [t.first_name for t in teachers] == ["Ada", "Grace"]

    async def test_fetch_with_params(self, repo, apg_conn) -> None:
        apg_conn.fetch.return_value = [{"id": 3}]

        teachers = await repo.fetch(Teacher, "SELECT id FROM teachers WHERE id<@id", {"id": 23})

        apg_conn.fetch.assert_awaited_once_with("SELECT id FROM teachers WHERE id<$1", 23)
        assert teachers == [Teacher(id=3)]

    async def test_fetch_param_mismatch_does_no_io(self, repo, apg_conn) -> None:
        with pytest.raises(ArgumentError):
            await repo.fetch(Teacher, "SELECT * FROM teachers", {"id": 1})
        apg_conn.fetch.assert_not_called()

    async def test_fetch_one_empty(self, repo, apg_conn) -> None:
        assert await repo.fetch_one(Sale) is None
        apg_conn.fetchrow.assert_awaited_once_with("SELECT * FROM sales LIMIT 1")

    async def test_fetch_one_maps_annotated_columns(self, repo, apg_conn) -> None:
        apg_conn.fetchrow.return_value = {"sale_id": 5, "item_name": "pen", "unknown": 1}

        sale = await repo.fetch_one(Sale)

        assert sale.id == 5
        assert sale.item == "pen"

    async def test_dump(self, repo, apg_conn) -> None:
        apg_conn.fetch.return_value = [{"a": 1, "b": None}]
        assert await repo.dump("SELECT 1 AS a, NULL AS b") == [{"a": 1, "b": None}]

    async def test_last_inserted_id(self, repo, apg_conn) -> None:
        apg_conn.fetchval.return_value = 17
        assert await repo.last_inserted_id() == 17

        apg_conn.fetchval.return_value = "17"
        assert await repo.last_inserted_id() == -1


class TestStream:
    def _cursor(self, apg_conn, records):
        tx = MagicMock()
        tx.start = AsyncMock()
        tx.commit = AsyncMock()
        tx.rollback = AsyncMock()
        apg_conn.transaction = MagicMock(return_value=tx)
        cursor = MagicMock()
        cursor.fetchrow = AsyncMock(side_effect=[*records, None])
        apg_conn.cursor = AsyncMock(return_value=cursor)
        return tx, cursor

    async def test_stream_commits_when_drained(self, repo, apg_conn) -> None:
        tx, _ = self._cursor(apg_conn, [{"id": 1}, {"id": 2}])

        stream = await repo.stream(Teacher, "SELECT * FROM teachers WHERE id>@id", {"id": 0})
        ids = [t.id async for t in stream]

        assert ids == [1, 2]
        apg_conn.cursor.assert_awaited_once_with("SELECT * FROM teachers WHERE id>$1", 0)
        tx.start.assert_awaited_once()
        tx.commit.assert_awaited_once()
        assert stream.closed

    async def test_early_exit_rolls_back_and_frees_repository(self, repo, apg_conn) -> None:
        tx, _ = self._cursor(apg_conn, [{"id": 1}, {"id": 2}])

        with pytest.raises(RuntimeError):
            async with await repo.stream(Teacher) as stream:
                async for _ in stream:
                    with pytest.raises(ResourceStateError):
                        await repo.fetch(Teacher)
                    raise RuntimeError("stop")

        tx.rollback.assert_awaited_once()
        tx.commit.assert_not_awaited()
        assert await repo.fetch(Teacher) == []

    async def test_cancel_during_fetch(self, repo, apg_conn) -> None:
        tx, cursor = self._cursor(apg_conn, [])
        cursor.fetchrow = AsyncMock(side_effect=_hang)
        token = CancellationToken()

        stream = await repo.stream(Teacher, cancel=token)
        token.cancel_after(0.01)
        with pytest.raises(OperationCancelled):
            await stream.__anext__()

        tx.rollback.assert_awaited_once()


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrite:
    async def test_insert(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "INSERT 0 1"

        assert await repo.insert(Counter(value=23)) == 1
        apg_conn.execute.assert_awaited_once_with("INSERT INTO Counter (value) VALUES($1)", 23)

    async def test_insert_returning(self, repo, apg_conn) -> None:
        apg_conn.fetchrow.return_value = {"id": 9, "first_name": "Ada"}

        stored = await repo.insert_returning(Teacher(first_name="Ada"))

        apg_conn.fetchrow.assert_awaited_once_with(
            "INSERT INTO teachers (first_name) VALUES($1) RETURNING *", "Ada"
        )
        assert stored == Teacher(id=9, first_name="Ada")

    async def test_insert_many(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "INSERT 0 2"

        count = await repo.insert_many([Teacher(first_name="A", salary=1), Teacher(first_name="B", salary=2)])

        assert count == 2
        apg_conn.execute.assert_awaited_once_with(
            "INSERT INTO teachers (first_name,salary) VALUES($1,$2),($3,$4)", "A", 1, "B", 2
        )

    async def test_insert_many_returning(self, repo, apg_conn) -> None:
        apg_conn.fetch.return_value = [{"id": 1}, {"id": 2}]

        stored = await repo.insert_many_returning([Teacher(first_name="A"), Teacher(first_name="B")])

        assert [t.id for t in stored] == [1, 2]

    async def test_update(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "UPDATE 1"

        count = await repo.update(Teacher(first_name="Ada"), "id=@id", {"id": 11})

        assert count == 1
        apg_conn.execute.assert_awaited_once_with(
            "UPDATE teachers SET first_name = $1 WHERE id=$2", "Ada", 11
        )

    async def test_update_collision_executes_nothing(self, repo, apg_conn) -> None:
        with pytest.raises(ArgumentError):
            await repo.update(Teacher(first_name="A"), "first_name=@first_name", {"first_name": "B"})
        apg_conn.execute.assert_not_called()

    async def test_delete(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "DELETE 1"

        assert await repo.delete("teachers", "id=@id", {"id": 11}) == 1
        apg_conn.execute.assert_awaited_once_with("DELETE FROM teachers WHERE id=$1", 11)

    async def test_create_table(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "CREATE TABLE"

        await repo.create_table(Counter, drop_if_exists=True)

        apg_conn.execute.assert_awaited_once_with(
            "DROP TABLE IF EXISTS Counter; CREATE TABLE Counter(value integer)"
        )

    async def test_execute_non_query_without_row_count(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "CREATE TABLE"
        assert await repo.execute_non_query("CREATE TEMP TABLE t(c INT)") == -1


# ---------------------------------------------------------------------------
# Cancellation and driver errors
# ---------------------------------------------------------------------------


class TestCancellation:
    async def test_already_cancelled_token_skips_io(self, repo, apg_conn) -> None:
        token = CancellationToken()
        token.cancel()

        with pytest.raises(OperationCancelled):
            await repo.fetch(Teacher, cancel=token)

        apg_conn.fetch.assert_not_awaited()

    async def test_cancel_in_flight(self, repo, apg_conn) -> None:
        apg_conn.execute = AsyncMock(side_effect=_hang)
        token = CancellationToken()
        token.cancel_after(0.01)

        with pytest.raises(OperationCancelled) as excinfo:
            await repo.execute_non_query("SELECT pg_sleep(10)", cancel=token)

        assert not isinstance(excinfo.value, PgMapperError)

    async def test_token_that_never_fires(self, repo, apg_conn) -> None:
        apg_conn.execute.return_value = "DELETE 3"
        assert await repo.delete("teachers", cancel=CancellationToken()) == 3

    async def test_driver_error_passes_through(self, repo, apg_conn) -> None:
        error = asyncpg.UniqueViolationError("duplicate key")
        apg_conn.execute.side_effect = error

        with pytest.raises(asyncpg.UniqueViolationError) as excinfo:
            await repo.insert(Counter(value=1))

        assert excinfo.value is error


class TestHelpers:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [("INSERT 0 3", 3), ("UPDATE 2", 2), ("DELETE 0", 0), ("CREATE TABLE", -1), ("", -1), (None, -1)],
    )
    def test_affected_rows(self, status, expected) -> None:
        assert affected_rows(status) == expected

    def test_prepare_without_params(self) -> None:
        assert prepare_async_sql("SELECT 1; SELECT 2", None) == ("SELECT 1; SELECT 2", [])
