"""
Tests for db.create / db.find / db.update / db.upsert against the in-memory gateway.
"""
from decimal import Decimal

import pytest

from tests.fakes import FakeDatabase, node, run_block
from workflow_engine.errors import ErrorCode, TableMaterializationError


class TestCreateAndFind:
    @pytest.mark.asyncio
    async def test_create_materializes_table_then_find_returns_row(self, engine_services, fake_db, publisher):
        created = await run_block(
            engine_services,
            node("c", "db.create", tableName="Contacts", insertData={"Email": "a@b.co", "Age": 30}),
        )

        assert created.success, created.error
        assert created.updates["tableName"] == "app_1_contacts"
        assert created.updates["recordId"] == 1
        assert "app_1_contacts" in fake_db.tables
        assert fake_db.user_tables[0]["table_name"] == "app_1_contacts"
        assert publisher.events[0][1] == "data-updated"
        assert publisher.events[0][2]["action"] == "create"
        assert publisher.events[0][2]["record"]["email"] == "a@b.co"

        found = await run_block(
            engine_services,
            node("f", "db.find", tableName="contacts", conditions=[{"field": "email", "operator": "=", "value": "a@b.co"}]),
        )

        assert found.success, found.error
        result = found.updates["dbFindResult"]
        assert result["count"] == 1
        assert result["rows"][0]["email"] == "a@b.co"
        assert result["rows"][0]["age"] == "30"
        assert result["hasMore"] is False
        select_sql = fake_db.statements[-1][0]
        assert select_sql == 'SELECT * FROM "app_1_contacts" WHERE "email" = $1 LIMIT $2'

    @pytest.mark.asyncio
    async def test_create_uses_form_data_and_element_labels(self, engine_services, fake_db):
        elements = [
            {"id": "el-1", "type": "input", "properties": {"label": "Full Name", "required": True}},
            {"id": "el-2", "type": "input", "properties": {"label": "Budget", "inputType": "number"}},
        ]
        result = await run_block(
            engine_services,
            node("c", "db.create", tableName="leads", elements=elements),
            {"formData": {"el-1": "Ada Lovelace", "el-2": "1500.50"}},
        )

        assert result.success, result.error
        row = fake_db.rows("app_1_leads")[0]
        assert row["full_name"] == "Ada Lovelace"
        assert row["budget"] == Decimal("1500.50")
        assert fake_db.tables["app_1_leads"]["columns"]["budget"] == "numeric"

    @pytest.mark.asyncio
    async def test_find_rejects_unknown_columns(self, engine_services, fake_db):
        fake_db.create_table("app_1_orders", {"status": "text"})
        result = await run_block(
            engine_services,
            node("f", "db.find", tableName="orders", conditions=[{"field": "secret", "operator": "=", "value": 1}]),
        )
        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_find_missing_table(self, engine_services):
        result = await run_block(engine_services, node("f", "db.find", tableName="ghosts"))
        assert not result.success
        assert "does not exist" in result.error.message

    @pytest.mark.asyncio
    async def test_cross_app_table_names_are_rescoped(self, engine_services, fake_db):
        fake_db.create_table("app_2_orders", {"status": "text"}, app_id=2)
        result = await run_block(engine_services, node("f", "db.find", tableName="app_2_orders"))
        assert not result.success
        assert not any("app_2_orders" in sql for sql, _ in fake_db.statements if sql.startswith("SELECT *"))

    @pytest.mark.asyncio
    async def test_materialization_failure_propagates(self, engine_services):
        engine_services.db = FakeDatabase(fail_on="CREATE INDEX")
        with pytest.raises(TableMaterializationError):
            await run_block(engine_services, node("c", "db.create", tableName="t", insertData={"a": 1}))


class TestUpdate:
    @pytest.mark.asyncio
    async def test_empty_where_is_rejected_before_sql(self, engine_services, fake_db):
        result = await run_block(
            engine_services,
            node("u", "db.update", tableName="orders", updateData={"status": "closed"}, whereConditions=[]),
        )

        assert not result.success
        assert result.error.code == ErrorCode.VALIDATION_ERROR
        assert fake_db.statements == []
        assert result.directives and result.directives[0].variant.value == "destructive"

    @pytest.mark.asyncio
    async def test_update_coerces_to_column_types(self, engine_services, fake_db, publisher):
        fake_db.create_table("app_1_products", {"sku": "text", "price": "numeric", "active": "boolean"})
        fake_db.rows("app_1_products").append({"id": 1, "sku": "A1", "price": Decimal("1.00"), "active": False})

        result = await run_block(
            engine_services,
            node(
                "u",
                "db.update",
                tableName="products",
                updateData='{"price": "{{newPrice}}", "active": "yes"}',
                whereConditions=[{"field": "sku", "operator": "=", "value": "{{sku}}"}],
            ),
            {"newPrice": "9.99", "sku": "A1"},
        )

        assert result.success, result.error
        assert result.updates["dbUpdateResult"]["updatedCount"] == 1
        row = fake_db.rows("app_1_products")[0]
        assert row["price"] == Decimal("9.99")
        assert row["active"] is True
        assert publisher.events[-1][2]["action"] == "update"
        assert publisher.events[-1][2]["changedColumns"] == ["active", "price"]
        assert publisher.events[-1][2]["records"][0]["sku"] == "A1"

    @pytest.mark.asyncio
    async def test_reserved_columns_cannot_be_written(self, engine_services, fake_db):
        fake_db.create_table("app_1_products", {"sku": "text"})
        result = await run_block(
            engine_services,
            node("u", "db.update", tableName="products", updateData={"id": 99},
                 whereConditions=[{"field": "sku", "operator": "=", "value": "A1"}]),
        )
        assert not result.success
        assert "reserved" in result.error.message


class TestUpsert:
    @pytest.mark.asyncio
    async def test_second_upsert_updates_the_same_row(self, engine_services, fake_db):
        config = {"tableName": "people", "uniqueFields": "email", "insertData": {"email": "a@b.co", "name": "Ada"}}

        first = await run_block(engine_services, node("u", "db.upsert", **config))
        config["insertData"] = {"email": "a@b.co", "name": "Ada L."}
        second = await run_block(engine_services, node("u", "db.upsert", **config))

        assert first.success and second.success, (first.error, second.error)
        assert first.updates["dbUpsertResult"]["action"] == "created"
        assert second.updates["dbUpsertResult"]["action"] == "updated"
        assert second.updates["recordId"] == first.updates["recordId"]
        rows = fake_db.rows("app_1_people")
        assert len(rows) == 1
        assert rows[0]["name"] == "Ada L."

    @pytest.mark.asyncio
    async def test_string_key_matches_integer_column(self, engine_services, fake_db):
        fake_db.create_table("app_1_items", {"code": "integer", "label": "text"})
        config = {"tableName": "items", "uniqueFields": ["code"]}

        first = await run_block(engine_services, node("u", "db.upsert", insertData={"code": 5, "label": "first"}, **config))
        second = await run_block(engine_services, node("u", "db.upsert", insertData={"code": "5", "label": "second"}, **config))

        assert first.success and second.success, (first.error, second.error)
        assert second.updates["dbUpsertResult"]["action"] == "updated"
        assert second.updates["recordId"] == first.updates["recordId"]
        rows = fake_db.rows("app_1_items")
        assert len(rows) == 1
        assert rows[0]["code"] == 5
        assert rows[0]["label"] == "second"
        lookup_params = [params for sql, params in fake_db.statements if sql.startswith('SELECT "id"')][-1]
        assert lookup_params[0] == 5

    @pytest.mark.asyncio
    async def test_requires_unique_fields(self, engine_services):
        result = await run_block(engine_services, node("u", "db.upsert", tableName="people", insertData={"a": 1}))
        assert not result.success
        assert result.error.code == ErrorCode.INVALID_CONFIG

    @pytest.mark.asyncio
    async def test_missing_table_without_create(self, engine_services):
        result = await run_block(
            engine_services,
            node("u", "db.upsert", tableName="people", uniqueFields=["email"], insertData={"email": "x@y.z"},
                 createIfMissing=False),
        )
        assert not result.success
        assert "does not exist" in result.error.message


@pytest.mark.asyncio
async def test_rate_limit_applies_per_action(engine_services, fake_db):
    engine_services.settings.rate_limits["db.find"] = 1
    fake_db.create_table("app_1_orders", {"status": "text"})

    first = await run_block(engine_services, node("f", "db.find", tableName="orders"))
    second = await run_block(engine_services, node("f", "db.find", tableName="orders"))

    assert first.success
    assert not second.success
    assert second.error.code == ErrorCode.RATE_LIMITED
