import pytest
from pydantic import ValidationError

from pymac.models import (
    GameInfo,
    PlayerRecord,
    ProfileVisibility,
    Verdict,
    account_id_to_steam_id64,
    parse_steam_id64,
    steam3_to_steam_id64,
)


def test_player_record_is_frozen():
    record = PlayerRecord(name="Test Player", steamID64=76561198000000001)

    assert record.steam_id64 == 76561198000000001
    assert record.local_verdict is Verdict.PLAYER

    with pytest.raises((TypeError, ValidationError)):
        record.name = "Other"  # type: ignore[misc]


def test_player_record_dumps_wire_names_with_nullable_objects():
    record = PlayerRecord(name="Test Player", steamID64=76561198000000001, tags=["b", "a", "a"])

    payload = record.model_dump(by_alias=True, mode="json")

    assert set(payload) == {
        "isSelf",
        "name",
        "steamID64",
        "steamInfo",
        "gameInfo",
        "customData",
        "convicted",
        "localVerdict",
        "tags",
    }
    assert payload["steamInfo"] is None
    assert payload["gameInfo"] is None
    assert payload["tags"] == ["a", "b"]
    assert payload["localVerdict"] == "Player"
    assert isinstance(payload["steamID64"], int)


def test_player_record_rejects_empty_name():
    with pytest.raises(ValidationError):
        PlayerRecord(name="", steamID64=76561198000000001)


def test_game_info_requires_userid():
    with pytest.raises(ValidationError):
        GameInfo(userid="")
    info = GameInfo(userid="5", team=2)
    assert info.state == "Active"
    assert info.kills == 0


def test_verdict_parse_is_case_insensitive():
    assert Verdict.parse("cheater") is Verdict.CHEATER
    assert Verdict.parse(None) is Verdict.PLAYER
    with pytest.raises(ValueError):
        Verdict.parse("villain")


def test_profile_visibility_from_api_defaults_to_private():
    assert ProfileVisibility.from_api(3) is ProfileVisibility.PUBLIC
    assert ProfileVisibility.from_api(2) is ProfileVisibility.FRIENDS_ONLY
    assert ProfileVisibility.from_api(99) is ProfileVisibility.PRIVATE


def test_steam_id_conversions():
    assert steam3_to_steam_id64("[U:1:22202]") == 76561197960287930
    assert account_id_to_steam_id64(22202) == 76561197960287930
    assert parse_steam_id64("76561197960287930") == 76561197960287930
    assert parse_steam_id64("[U:1:22202]") == 76561197960287930

    with pytest.raises(ValueError):
        parse_steam_id64("22202")
    with pytest.raises(ValueError):
        steam3_to_steam_id64("[U:0:22202]")
    with pytest.raises(ValueError):
        parse_steam_id64("not-an-id")
