"""End-to-end tests for the import orchestrator."""

from collections import Counter
from pathlib import Path

import pytest

from forum_migration.client.exceptions import (
    DuplicateMappingError,
    ErrorThresholdExceeded,
    NetworkError,
    ValidationFailedError,
)
from forum_migration.entities import EntityKind
from forum_migration.migration.coordinator import list_runs

from conftest import FakeSource, FakeTarget, board_rows

ALL_OPTIONAL = {
    "import_anonymous_users": True,
    "import_private_messages": True,
    "import_bookmarks": True,
}


def created_keys(target: FakeTarget, kind: EntityKind, field: str) -> list:
    return [attributes[field] for attributes in target.created_of(kind)]


async def test_full_run_creates_every_kind(make_orchestrator, source, target, registry):
    summary = await make_orchestrator(source, target, **ALL_OPTIONAL).run()

    assert summary.status == "completed"
    assert summary.source_version == "3.0.14"
    assert list(summary.kinds) == [
        "user",
        "anonymous_user",
        "group",
        "group_membership",
        "mapped_category",
        "category",
        "post",
        "message",
        "bookmark",
    ]
    counts = {kind: (s.created, s.skipped, s.failed) for kind, s in summary.kinds.items()}
    assert counts == {
        "user": (3, 0, 0),
        "anonymous_user": (1, 0, 0),
        "group": (1, 1, 0),
        "group_membership": (2, 1, 0),
        "mapped_category": (0, 0, 0),
        "category": (2, 0, 0),
        "post": (4, 0, 0),
        "message": (2, 0, 0),
        "bookmark": (2, 0, 0),
    }
    assert summary.errors == []
    assert registry.stats() == {
        "bookmark": 2,
        "category": 2,
        "group": 1,
        "group_membership": 2,
        "post": 6,
        "topic": 3,
        "user": 4,
    }


async def test_references_resolve_to_created_ids(make_orchestrator, source, target, registry):
    await make_orchestrator(source, target, import_anonymous_users=True).run()

    news = target.created_of(EntityKind.CATEGORY)[1]
    assert news["parent_category_id"] == registry.lookup(EntityKind.CATEGORY, "1")
    assert news["name"] == "News & Announcements"

    posts = target.created_of(EntityKind.POST)
    welcome, welcome_reply, rules, rules_reply = posts
    assert welcome["category"] == registry.lookup(EntityKind.CATEGORY, "2")
    assert welcome["user_id"] == registry.lookup(EntityKind.USER, "3")
    assert welcome_reply["topic_id"] == registry.lookup(EntityKind.TOPIC, "10")
    assert welcome_reply["user_id"] == registry.lookup(EntityKind.USER, "4")
    assert rules["category"] == registry.lookup(EntityKind.CATEGORY, "1")
    assert rules_reply["topic_id"] == registry.lookup(EntityKind.TOPIC, "11")
    assert rules_reply["user_id"] == registry.lookup(EntityKind.USER, "anon_guest")


async def test_second_run_creates_nothing(make_orchestrator, source, target):
    await make_orchestrator(source, target, **ALL_OPTIONAL).run()
    created = len(target.created)

    summary = await make_orchestrator(source, target, **ALL_OPTIONAL).run()

    assert len(target.created) == created
    assert summary.totals()["created"] == 0


async def test_fresh_run_skips_mapped_batches(make_orchestrator, source, target):
    await make_orchestrator(source, target).run()
    created = len(target.created)

    summary = await make_orchestrator(source, target).run(fresh=True)

    assert len(target.created) == created
    assert summary.kinds["user"].skipped == 3
    assert summary.kinds["user"].skipped_batches == 2
    assert summary.totals()["created"] == 0


async def test_new_source_rows_are_picked_up(make_orchestrator, target):
    rows = board_rows()
    source = FakeSource(rows)
    await make_orchestrator(source, target).run()

    rows[EntityKind.USER].append({"user_id": 8, "username": "carol", "user_type": 0})
    summary = await make_orchestrator(source, target).run()

    assert summary.kinds["user"].created == 1
    assert created_keys(target, EntityKind.USER, "username").count("carol") == 1


async def test_failed_rows_retried_on_next_run(make_orchestrator, source, registry):
    failing = FakeTarget(
        fail=lambda kind, attributes: ValidationFailedError("username taken")
        if attributes.get("username") == "bob"
        else None
    )
    first = await make_orchestrator(source, failing).run()

    assert first.status == "completed"
    assert first.kinds["user"].failed == 1
    assert first.kinds["group_membership"].failed == 1
    assert {(e.entity_kind, e.external_id) for e in first.errors} == {
        ("user", "4"),
        ("group_membership", "7,4"),
    }
    assert registry.lookup(EntityKind.USER, "4") is None

    failing.fail = None
    second = await make_orchestrator(source, failing).run()

    assert second.kinds["user"].created == 1
    assert second.kinds["group_membership"].created == 1
    assert second.errors == []
    assert Counter(created_keys(failing, EntityKind.USER, "username")) == {
        "admin": 1,
        "alice": 1,
        "bob": 1,
    }


async def test_cursor_held_at_first_failed_batch(make_orchestrator, source, state_config):
    failing = FakeTarget(
        fail=lambda kind, attributes: ValidationFailedError("rejected")
        if attributes.get("username") == "alice"
        else None
    )
    orchestrator = make_orchestrator(source, failing, batch_size=1)

    await orchestrator.run(only=["user"])

    assert orchestrator.reader.load_cursor(EntityKind.USER) == 2


async def test_resume_after_abort(make_orchestrator, source, registry):
    flaky = FakeTarget(
        fail=lambda kind, attributes: NetworkError("connection reset")
        if attributes.get("raw") == "Post 102"
        else None
    )
    orchestrator = make_orchestrator(source, flaky)

    with pytest.raises(NetworkError):
        await orchestrator.run()

    assert orchestrator.summary.status == "failed"
    assert "NetworkError" in orchestrator.summary.fatal_error
    assert orchestrator.reader.load_cursor(EntityKind.POST) == 101

    flaky.fail = None
    summary = await make_orchestrator(source, flaky).run()

    assert summary.status == "completed"
    assert summary.kinds["post"].created == 2
    assert Counter(created_keys(flaky, EntityKind.POST, "raw")) == {
        "Post 100": 1,
        "Post 101": 1,
        "Post 102": 1,
        "Post 103": 1,
    }
    assert [r["status"] for r in list_runs(registry.database_url)] == ["completed", "failed"]


async def test_duplicate_source_rows_created_once(make_orchestrator, target):
    rows = board_rows()
    rows[EntityKind.USER].insert(1, dict(rows[EntityKind.USER][0]))

    summary = await make_orchestrator(FakeSource(rows), target, batch_size=10).run(only=["user"])

    assert summary.kinds["user"].created == 3
    assert created_keys(target, EntityKind.USER, "username").count("admin") == 1


async def test_skip_directive(make_orchestrator, source, target):
    summary = await make_orchestrator(source, target, category_mapping={"2": "skip"}).run()

    assert [c["name"] for c in target.created_of(EntityKind.CATEGORY)] == ["General"]
    assert summary.kinds["category"].skipped == 1
    assert summary.kinds["post"].skipped == 2
    assert summary.kinds["post"].created == 2
    assert summary.errors == []


async def test_mapped_forum_lands_in_created_category(make_orchestrator, source, target, registry):
    summary = await make_orchestrator(
        source, target, category_mapping={"2": ["Archive", "News"]}
    ).run()

    assert summary.kinds["mapped_category"].created == 2
    news = target.created_of(EntityKind.MAPPED_CATEGORY)[1]
    news_id = registry.lookup(EntityKind.CATEGORY, "Archive,News")
    assert news["parent_category_id"] == registry.lookup(EntityKind.CATEGORY, "Archive")

    welcome = target.created_of(EntityKind.POST)[0]
    assert welcome["title"] == "Welcome"
    assert welcome["category"] == news_id
    assert summary.kinds["category"].skipped == 1


async def test_mapped_forums_enable_tagging(make_orchestrator, source, target):
    await make_orchestrator(
        source, target, category_mapping={"2": ["Archive"]}, tags_mapping={"2": ["archived"]}
    ).run()

    assert target.settings["tagging_enabled"] is True
    welcome, _, rules, _ = target.created_of(EntityKind.POST)
    assert welcome["tags"] == ["archived"]
    assert "tags" not in rules


async def test_tagging_left_alone_without_mappings(make_orchestrator, source, target):
    await make_orchestrator(source, target).run()

    assert "tagging_enabled" not in target.settings


async def test_duplicate_mapping_aborts_run(make_orchestrator, source, target, registry):
    registry.register(EntityKind.TOPIC, "10", 4242)
    orchestrator = make_orchestrator(source, target)

    with pytest.raises(DuplicateMappingError):
        await orchestrator.run()

    assert orchestrator.summary.status == "failed"
    assert registry.lookup(EntityKind.TOPIC, "10") == 4242
    assert target.created_of(EntityKind.POST)[0]["title"] == "Welcome"
    assert list_runs(registry.database_url)[0]["status"] == "failed"


async def test_error_threshold_aborts_run(make_orchestrator, source):
    failing = FakeTarget(fail=lambda kind, attributes: ValidationFailedError("rejected"))
    orchestrator = make_orchestrator(source, failing, max_errors=2)

    with pytest.raises(ErrorThresholdExceeded):
        await orchestrator.run()

    assert orchestrator.summary.status == "failed"
    assert len(orchestrator.summary.errors) == 3
    assert "group" not in orchestrator.summary.kinds


async def test_optional_stages_follow_flags(make_orchestrator, source, target):
    default = [s.kind for s in make_orchestrator(source, target).planned_stages()]
    assert default == [
        EntityKind.USER,
        EntityKind.GROUP,
        EntityKind.GROUP_MEMBERSHIP,
        EntityKind.MAPPED_CATEGORY,
        EntityKind.CATEGORY,
        EntityKind.POST,
    ]

    everything = make_orchestrator(source, target, **ALL_OPTIONAL).planned_stages()
    assert len(everything) == 9

    only = make_orchestrator(source, target, **ALL_OPTIONAL).planned_stages(["bookmark", "user"])
    assert [s.kind for s in only] == [EntityKind.USER, EntityKind.BOOKMARK]


async def test_disabled_stage_is_not_read(make_orchestrator, source, target):
    await make_orchestrator(source, target).run()

    read = {kind for kind, _ in source.fetches}
    assert EntityKind.MESSAGE not in read
    assert EntityKind.BOOKMARK not in read
    assert EntityKind.ANONYMOUS_USER not in read


async def test_composite_cursor_resume(make_orchestrator, source, target):
    orchestrator = make_orchestrator(source, target, batch_size=1, **ALL_OPTIONAL)
    await orchestrator.run()

    assert orchestrator.reader.load_cursor(EntityKind.GROUP_MEMBERSHIP) == (7, 4)
    assert orchestrator.reader.load_cursor(EntityKind.BOOKMARK) == (4, 10)

    source.fetches.clear()
    await make_orchestrator(source, target, batch_size=1, **ALL_OPTIONAL).run()
    assert (EntityKind.BOOKMARK, (4, 10)) in source.fetches
    assert (EntityKind.BOOKMARK, None) not in source.fetches


async def test_dry_run(make_orchestrator, source, target, registry):
    orchestrator = make_orchestrator(source, target, dry_run=True)

    summary = await orchestrator.run(only=["user", "group"])

    assert summary.dry_run
    assert summary.kinds["user"].created == 3
    assert summary.kinds["group"].skipped == 1
    assert target.created == []
    assert registry.stats() == {}
    assert orchestrator.reader.load_cursor(EntityKind.USER) is None
    assert list_runs(registry.database_url)[0]["dry_run"] is True


async def test_upload_limits_raised(make_orchestrator, target):
    source = FakeSource(board_rows(), max_filesize=3 * 1024 * 1024 + 1)
    target.settings = {"max_image_size_kb": 8192, "max_attachment_size_kb": 1024}

    await make_orchestrator(source, target, adjust_upload_limits=True).run(only=["user"])

    assert target.settings == {"max_image_size_kb": 8192, "max_attachment_size_kb": 3073}


async def test_upload_limits_left_alone_by_default(make_orchestrator, target):
    source = FakeSource(board_rows(), max_filesize=10 * 1024 * 1024)
    target.settings = {"max_attachment_size_kb": 1024}

    await make_orchestrator(source, target).run(only=["user"])

    assert target.settings == {"max_attachment_size_kb": 1024}


async def test_report_written(make_orchestrator, source, target, tmp_path):
    report_dir = tmp_path / "reports"

    summary = await make_orchestrator(source, target).run(
        only=["user"], generate_report=True, report_dir=str(report_dir)
    )

    assert set(summary.report_files) == {"json", "markdown"}
    markdown = Path(summary.report_files["markdown"]).read_text()
    assert "| user | 3 | 3 | 0 | 0 |" in markdown
