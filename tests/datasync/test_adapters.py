from datetime import date, datetime

import pytest

from flask_app.datasync.adapters import (
    CSVAdapter,
    DatabaseAdapter,
    SyncFilters,
    build_source_url,
    create_adapter,
    resolve_adapters,
)
from flask_app.datasync.adapters.source_schema import (
    cms_page_table,
    customer_address_table,
    customer_table,
    product_attribute_table,
    stock_table,
)
from flask_app.datasync.errors import AdapterNotFound, ConfigurationError, SourceFileNotFound
from flask_app.models import db


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "customers.csv"
    path.write_text(
        "\ufeff entity_id ,email,created_at\n"
        "1,a@example.com,2024-01-05\n"
        "2,b@example.com\n"
        "   ,  ,  \n"
        "3,c@example.com,2024-02-10\n"
        "4,d@example.com,2024-03-15\n",
        encoding="utf-8",
    )
    return path


def test_csv_cleans_headers_and_skips_bad_rows(csv_file):
    adapter = CSVAdapter().configure(file_path=str(csv_file))

    records = list(adapter.read("customer"))

    assert [record["entity_id"] for record in records] == ["1", "3", "4"]
    assert records[0]["email"] == "a@example.com"
    assert adapter.count("customer") == 3
    assert adapter.existing_ids("customer", [1, 2, 4, 9]) == {1, 4}


def test_csv_offset_limit_and_filters(csv_file):
    adapter = CSVAdapter().configure(file_path=str(csv_file))

    limited = list(adapter.read("customer", SyncFilters(offset=1, limit=1)))
    assert [record["entity_id"] for record in limited] == ["3"]

    dated = list(adapter.read("customer", {"date_from": "2024-02-01", "date_to": "2024-02-28"}))
    assert [record["entity_id"] for record in dated] == ["3"]


def test_csv_validate(tmp_path, csv_file):
    assert CSVAdapter().configure(file_path=str(csv_file)).validate()

    with pytest.raises(SourceFileNotFound):
        CSVAdapter().configure(file_path=str(tmp_path / "missing.csv")).validate()
    with pytest.raises(ConfigurationError):
        CSVAdapter().validate()


def test_csv_stock_rows_use_product_id(tmp_path):
    path = tmp_path / "stock.csv"
    path.write_text("product_id,qty\n7,3\n", encoding="utf-8")

    records = list(CSVAdapter().configure(file_path=str(path)).read("stock"))

    assert records[0]["entity_id"] == "7"


def test_sync_filters_from_mapping():
    filters = SyncFilters.from_mapping(
        {"entity_ids": "3, 1,2", "date_from": "2024-01-01", "limit": "10", "store_id": [1], "website_id": 2}
    )

    assert filters.entity_ids == (3, 1, 2)
    assert filters.date_from == date(2024, 1, 1)
    assert filters.limit == 10
    assert filters.store_id == (1,)
    assert filters.extra == {"website_id": 2}
    assert filters.with_entity_ids([5, 4, 5]).entity_ids == (4, 5)
    assert SyncFilters.from_mapping(filters) is filters

    with pytest.raises(ConfigurationError):
        SyncFilters.from_mapping({"entity_ids": "1,two"})
    with pytest.raises(ConfigurationError):
        SyncFilters.from_mapping({"date_to": "last tuesday"})
    with pytest.raises(ConfigurationError):
        SyncFilters.from_mapping({"id_from": "abc"})


def test_sync_filters_matches():
    filters = SyncFilters.from_mapping({"id_from": 2, "date_to": "2024-01-31", "store_id": "1"})

    assert filters.matches({"entity_id": 2, "created_at": "2024-01-31T23:00:00", "store_id": 1})
    assert not filters.matches({"entity_id": 1})
    assert not filters.matches({"entity_id": 3, "created_at": datetime(2024, 2, 1)})
    assert not filters.matches({"entity_id": 3, "store_id": 2})
    assert not SyncFilters(entity_ids=(1,)).matches({"email": "x"})


def test_database_adapter_reads_source_bind(app):
    with db.engines["source"].begin() as connection:
        connection.execute(
            customer_table.insert(),
            [
                {"entity_id": 1, "email": "a@example.com", "created_at": datetime(2024, 1, 1)},
                {"entity_id": 2, "email": "b@example.com", "created_at": datetime(2024, 6, 1)},
            ],
        )
        connection.execute(
            customer_address_table.insert(),
            [{"entity_id": 5, "parent_id": 1, "street": "1 Main St", "city": "Springfield"}],
        )
        connection.execute(stock_table.insert(), [{"product_id": 9, "qty": 4}])

    adapter = DatabaseAdapter().configure()
    assert adapter.validate()

    records = list(adapter.read("customer", {"date_to": "2024-03-01"}))
    assert [record["entity_id"] for record in records] == [1]
    assert records[0]["addresses"][0]["city"] == "Springfield"
    assert adapter.count("customer") == 2
    assert adapter.existing_ids("customer", [1, 3]) == {1}

    stock = list(adapter.read("stock", SyncFilters(entity_ids=(9,))))
    assert stock[0]["entity_id"] == 9
    assert adapter.existing_ids("stock", [9, 10]) == {9}


def test_database_adapter_reads_catalog_content(app):
    with db.engines["source"].begin() as connection:
        connection.execute(
            cms_page_table.insert(),
            [
                {"page_id": 1, "identifier": "home", "title": "Home", "update_time": datetime(2024, 1, 1)},
                {"page_id": 2, "identifier": "about", "title": "About", "update_time": datetime(2024, 6, 1)},
            ],
        )
        connection.execute(
            product_attribute_table.insert(),
            [{"attribute_id": 80, "attribute_code": "color", "frontend_input": "select", "options": "Red|Blue"}],
        )

    adapter = DatabaseAdapter().configure()

    pages = list(adapter.read("cms_page", {"date_from": "2024-03-01"}))
    assert [(page["entity_id"], page["identifier"]) for page in pages] == [(2, "about")]
    attributes = list(adapter.read("product_attribute", {"date_from": "2024-03-01"}))
    assert attributes[0]["entity_id"] == 80
    assert adapter.existing_ids("cms_page", [1, 3]) == {1}


def test_build_source_url_defaults():
    url = build_source_url(host=None, database="store", username="reader", password="")

    assert url.host == "localhost"
    assert url.password is None
    assert url.drivername == "mysql+pymysql"


def test_create_adapter_and_registry(csv_file):
    adapter = create_adapter("csv", file_path=str(csv_file))
    assert isinstance(adapter, CSVAdapter)
    assert adapter.info()["file_exists"]

    with pytest.raises(AdapterNotFound):
        create_adapter("database", allowed=("csv",))
    with pytest.raises(AdapterNotFound):
        resolve_adapters(["csv", "ftp"])
    assert [descriptor.name for descriptor in resolve_adapters(["database"])] == ["database"]
