"""Tests for category hierarchy resolution."""

import pytest

from forum_migration.client.exceptions import ServerError, ValidationFailedError
from forum_migration.config import ImportConfig
from forum_migration.entities import EntityKind
from forum_migration.migration.hierarchy import HierarchyResolver, ordered_paths

from conftest import FakeTarget

MAPPING = {
    "4": ["Support", "Linux"],
    "5": ["Support", "Windows"],
    "6": ["Archive"],
    "9": "skip",
}


def test_ordered_paths_parents_first():
    assert ordered_paths(MAPPING) == [
        ("Archive",),
        ("Support",),
        ("Support", "Linux"),
        ("Support", "Windows"),
    ]


async def test_creates_every_path_parents_first(registry, target):
    config = ImportConfig(category_mapping=MAPPING)

    result = await HierarchyResolver(config, registry, target).resolve()

    names = [attributes["name"] for attributes in target.created_of(EntityKind.MAPPED_CATEGORY)]
    assert names == ["Archive", "Support", "Linux", "Windows"]

    support = result.path_ids[("Support",)]
    linux = target.created_of(EntityKind.MAPPED_CATEGORY)[2]
    assert linux["parent_category_id"] == support
    assert "parent_category_id" not in target.created_of(EntityKind.MAPPED_CATEGORY)[1]

    assert result.category_ids == {
        "4": result.path_ids[("Support", "Linux")],
        "5": result.path_ids[("Support", "Windows")],
        "6": result.path_ids[("Archive",)],
    }
    assert result.skipped_forums == {"9"}
    assert result.created == 4
    assert result.errors == []
    assert registry.lookup(EntityKind.CATEGORY, "Support,Linux") == result.path_ids[
        ("Support", "Linux")
    ]


async def test_second_pass_reuses_registered_paths(registry, target):
    config = ImportConfig(category_mapping=MAPPING)
    first = await HierarchyResolver(config, registry, target).resolve()

    second = await HierarchyResolver(config, registry, target).resolve()

    assert len(target.created) == 4
    assert second.created == 0
    assert second.reused == 4
    assert second.category_ids == first.category_ids


async def test_prefix_namespaces_paths(registry, target):
    config = ImportConfig(prefix="b2:", category_mapping={"4": ["Support"]})

    result = await HierarchyResolver(config, registry, target).resolve()

    assert registry.lookup(EntityKind.CATEGORY, "b2:Support") == result.path_ids[("Support",)]


async def test_failed_parent_fails_children(registry):
    target = FakeTarget(
        fail=lambda kind, attributes: ValidationFailedError("name taken", status_code=422)
        if attributes["name"] == "Support"
        else None
    )
    config = ImportConfig(category_mapping=MAPPING)

    result = await HierarchyResolver(config, registry, target).resolve()

    assert [a["name"] for a in target.created_of(EntityKind.MAPPED_CATEGORY)] == ["Archive"]
    assert sorted(e.external_id for e in result.errors) == [
        "Support",
        "Support,Linux",
        "Support,Windows",
    ]
    assert result.category_ids == {"6": result.path_ids[("Archive",)]}


async def test_structural_target_errors_propagate(registry):
    target = FakeTarget(fail=lambda kind, attributes: ServerError("down", status_code=503))
    config = ImportConfig(category_mapping=MAPPING)

    with pytest.raises(ServerError):
        await HierarchyResolver(config, registry, target).resolve()


async def test_dry_run_plans_without_creating(registry, target):
    config = ImportConfig(category_mapping=MAPPING, dry_run=True)

    result = await HierarchyResolver(config, registry, target).resolve()

    assert target.created == []
    assert result.errors == []
    assert registry.count(EntityKind.CATEGORY) == 0


async def test_empty_mapping(registry, target):
    result = await HierarchyResolver(ImportConfig(), registry, target).resolve()

    assert result.order == []
    assert target.created == []
