from sqlalchemy import func, select

from flask_app.datasync.identity import IdentityRegistry, MappingInput
from flask_app.models import RegistryMapping, db


def _mapping_count():
    return db.session.scalar(select(func.count(RegistryMapping.id)))


def test_register_and_resolve(registry):
    registry.register("live", "customer", 10, 501, external_ref="ada@example.com")
    db.session.commit()

    assert registry.resolve("live", "customer", 10) == 501
    assert registry.resolve("live", "customer", "10") == 501
    assert registry.exists("live", "customer", 10)
    assert registry.resolve("staging", "customer", 10) is None
    assert registry.resolve("live", "order", 10) is None


def test_register_refreshes_existing_mapping(registry):
    registry.register("live", "product", 3, 30, external_ref="SKU-OLD")
    registry.register("live", "product", 3, 31, external_ref="SKU-NEW", metadata={"adapter": "csv"})
    db.session.commit()

    mapping = db.session.scalar(select(RegistryMapping))
    assert _mapping_count() == 1
    assert mapping.target_id == 31
    assert mapping.external_ref == "SKU-NEW"
    assert mapping.metadata_json == {"adapter": "csv"}


def test_resolve_does_not_cache_misses(registry):
    assert registry.resolve("live", "customer", 1) is None

    other = IdentityRegistry(db.session)
    other.register("live", "customer", 1, 77)
    db.session.commit()

    assert registry.resolve("live", "customer", 1) == 77


def test_bulk_upsert_collapses_duplicate_keys(registry):
    written = registry.bulk_upsert(
        [
            {"source_system": "live", "entity_type": "order", "source_id": 1, "target_id": 100},
            {"source_system": "live", "entity_type": "order", "source_id": 2, "target_id": 200},
            MappingInput("live", "order", 1, 101, external_ref="100000001"),
        ]
    )

    assert written == 2
    assert _mapping_count() == 2
    assert registry.resolve_many("live", "order", [1, 2, 3]) == {1: 101, 2: 200}


def test_bulk_upsert_is_idempotent(registry):
    rows = [{"source_system": "live", "entity_type": "order", "source_id": 1, "target_id": 100}]
    registry.bulk_upsert(rows)
    registry.bulk_upsert(rows)

    assert _mapping_count() == 1
    assert registry.bulk_upsert([]) == 0


def test_external_ref_is_not_unique(registry):
    registry.register("live", "customer", 1, 11, external_ref="shared@example.com")
    registry.register("legacy", "customer", 8, 11, external_ref="shared@example.com")
    db.session.commit()

    assert len(registry.find_by_external_ref("shared@example.com")) == 2
    assert len(registry.find_by_external_ref("shared@example.com", source_system="legacy")) == 1
    assert {mapping.source_system for mapping in registry.find_by_target("customer", 11)} == {"live", "legacy"}


def test_delete_by_source_system_clears_cache(registry):
    registry.register("live", "customer", 1, 11)
    registry.register("live", "order", 2, 22)
    registry.register("legacy", "customer", 1, 12)
    db.session.commit()

    deleted = registry.delete_by_source_system("live", "customer")

    assert deleted == 1
    assert registry.resolve("live", "customer", 1) is None
    assert registry.resolve("live", "order", 2) == 22
    assert registry.stats() == {"customer": 1, "order": 1}
    assert registry.stats("legacy") == {"customer": 1}


def test_preload_warms_cache(registry):
    registry.register("live", "category", 4, 40)
    registry.register("live", "category", 5, 50)
    db.session.commit()

    fresh = IdentityRegistry(db.session)
    assert fresh.preload("live", "category") == 2
    assert fresh._cache[("live", "category", 5)] == 50
