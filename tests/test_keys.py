import pytest

from birbnest.keys import KeyBuilder


@pytest.mark.parametrize(
    "instance_id,want",
    [
        ("inst_1719432000_abc12345", "inst_1719432000_abc12345"),
        ("", ""),
        ("  inst_123  ", "inst_123"),
    ],
)
def test_new_key_builder(instance_id, want):
    assert KeyBuilder(instance_id).instance_id == want


def test_has_instance():
    assert KeyBuilder("inst_123").has_instance is True
    assert KeyBuilder("   ").has_instance is False


@pytest.mark.parametrize(
    "instance_id,components,want",
    [
        ("inst_123", ["cache", "user123"], "instance:inst_123:cache:user123"),
        ("inst_123", ["table", "users", "row", "456"], "instance:inst_123:table:users:row:456"),
        ("", ["cache", "user123"], "cache:user123"),
        (
            "inst_1719432000_abc12345",
            ["index", "users_by_name", "john"],
            "instance:inst_1719432000_abc12345:index:users_by_name:john",
        ),
    ],
)
def test_build_key(instance_id, components, want):
    assert KeyBuilder(instance_id).build_key(*components) == want


@pytest.mark.parametrize(
    "key,want_id,want_components",
    [
        ("instance:inst_123:cache:user456", "inst_123", ["cache", "user456"]),
        (
            "instance:inst_1719432000_abc12345:table:users:row:789",
            "inst_1719432000_abc12345",
            ["table", "users", "row", "789"],
        ),
        ("cache:user123", "", ["cache", "user123"]),
        ("", "", [""]),
    ],
)
def test_parse_key(key, want_id, want_components):
    instance_id, components = KeyBuilder("").parse_key(key)
    assert instance_id == want_id
    assert components == want_components


def test_parse_key_instance_only():
    assert KeyBuilder("").parse_key("instance:inst_123") == ("inst_123", [])


def test_build_then_parse_round_trip():
    kb = KeyBuilder("inst_123")
    assert kb.parse_key(kb.build_key("a", "b", "c")) == ("inst_123", ["a", "b", "c"])


@pytest.mark.parametrize(
    "instance_id,prefix,want",
    [
        ("inst_123", "", "instance:inst_123:*"),
        ("inst_123", "cache", "instance:inst_123:cache*"),
        ("", "", "*"),
        ("", "cache", "cache*"),
    ],
)
def test_build_pattern(instance_id, prefix, want):
    assert KeyBuilder(instance_id).build_pattern(prefix) == want


@pytest.mark.parametrize(
    "instance_id,key,want",
    [
        ("inst_123", "instance:inst_123:cache:data", True),
        ("inst_123", "instance:inst_456:cache:data", False),
        ("inst_123", "cache:data", False),
        ("", "cache:data", True),
        ("", "instance:inst_123:cache:data", False),
    ],
)
def test_is_instance_key(instance_id, key, want):
    assert KeyBuilder(instance_id).is_instance_key(key) is want


@pytest.mark.parametrize(
    "instance_id,key,want",
    [
        ("inst_123", "instance:inst_123:cache:data", "cache:data"),
        ("inst_123", "instance:inst_456:cache:data", "instance:inst_456:cache:data"),
        ("inst_123", "cache:data", "cache:data"),
        ("", "instance:inst_123:cache:data", "instance:inst_123:cache:data"),
    ],
)
def test_strip_instance(instance_id, key, want):
    assert KeyBuilder(instance_id).strip_instance(key) == want


def test_helpers():
    kb = KeyBuilder("inst_123")
    assert kb.table_key("users", "456") == "instance:inst_123:table:users:row:456"
    assert kb.index_key("users_by_name", "john") == "instance:inst_123:index:users_by_name:john"
    assert kb.cache_key("session", "user123") == "instance:inst_123:cache:session:user123"
    assert kb.schema_key("users") == "instance:inst_123:schema:users"
    assert kb.event_log_key("1234567890") == "instance:inst_123:eventlog:1234567890"


def test_backward_compatibility():
    kb = KeyBuilder("")
    assert not kb.build_key("cache", "user123").startswith("instance:")
    assert kb.is_instance_key("cache:user123") is True
    assert kb.is_instance_key("instance:inst_123:cache:user123") is False


def test_real_world_scenarios():
    overworld = KeyBuilder("inst_1719432000_abc12345")
    assert (
        overworld.cache_key("player", "p123")
        == "instance:inst_1719432000_abc12345:cache:player:p123"
    )
    dungeon = KeyBuilder("inst_1719432100_xyz98765")
    assert (
        dungeon.table_key("monster_spawns", "m456")
        == "instance:inst_1719432100_xyz98765:table:monster_spawns:row:m456"
    )
    assert overworld.is_instance_key("instance:inst_9999999999_other:cache:data") is False