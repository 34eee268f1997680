import logging
import random
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from pymac.ingest import PlayerJoined, PlayerLeft, PlayerStateChanged, SessionInfoChanged, SessionReset
from pymac.models import Gamemode, Verdict
from pymac.persistence import PersistenceError, VerdictStore
from pymac.roster import PresenceHistory, RosterManager


STEAM_ID = 76561198000000001
OTHER_ID = 76561198000000002


class FlakyStore(VerdictStore):
    fail = False

    def save(self, *args, **kwargs):
        if self.fail:
            raise PersistenceError("disk full")
        return super().save(*args, **kwargs)


@pytest.fixture
def flaky_store(tmp_path: Path, monkeypatch) -> FlakyStore:
    monkeypatch.delenv("PYMAC_DB_PATH", raising=False)
    return FlakyStore(tmp_path / "flaky.sqlite")


def _join_and_update(roster: RosterManager) -> None:
    roster.apply_event(PlayerJoined(userid="5", steam_id64=STEAM_ID, name="Heavy"))
    roster.apply_event(
        PlayerStateChanged(userid="5", team=2, ping=40, kills=0, deaths=0, time=10, state="active", loss=0)
    )


def test_join_then_state_change_populates_game_info(store):
    roster = RosterManager(store)

    _join_and_update(roster)

    record = roster.get(STEAM_ID)
    assert record.game_info.team == 2
    assert record.game_info.userid == "5"
    assert record.game_info.ping == 40
    assert record.steam_info is None
    assert record.name == "Heavy"


def test_player_left_clears_game_info_but_keeps_judgment(store):
    roster = RosterManager(store)
    _join_and_update(roster)
    roster.apply_verdict(STEAM_ID, verdict=Verdict.CHEATER, tags=["aimbot"])

    roster.apply_event(PlayerLeft(userid="5"))

    record = roster.get(STEAM_ID)
    assert record.game_info is None
    assert record.local_verdict is Verdict.CHEATER
    assert record.tags == frozenset({"aimbot"})
    assert roster.snapshot().num_players == 0


def test_session_reset_clears_all_presence_and_keeps_persisted_fields(store):
    roster = RosterManager(store)
    _join_and_update(roster)
    roster.upsert_presence(OTHER_ID, userid="6", name="Scout", team=3)
    roster.apply_verdict(OTHER_ID, verdict="Suspicious", tags=["fast"])
    roster.apply_session_info(map="pl_upward", hostname="Server")
    before = store.load()

    roster.apply_event(SessionReset(reason="lost"))

    state = roster.snapshot()
    assert all(player.game_info is None for player in state.players)
    assert state.num_players == 0
    assert state.map == ""
    assert store.load() == before
    assert roster.get(OTHER_ID).local_verdict is Verdict.SUSPICIOUS
    assert not roster.update_presence("5", ping=10)


def test_roster_never_holds_duplicate_identities(store):
    roster = RosterManager(store)
    rng = random.Random(7)
    ids = [STEAM_ID + offset for offset in range(6)]

    for step in range(300):
        steam_id = rng.choice(ids)
        if rng.random() < 0.3:
            roster.mark_absent(steam_id)
        else:
            roster.upsert_presence(steam_id, userid=str(rng.randint(1, 8)), ping=step)

    players = roster.snapshot().players
    seen = [player.steam_id64 for player in players]
    assert len(seen) == len(set(seen))
    userids = [player.game_info.userid for player in players if player.game_info is not None]
    assert len(userids) == len(set(userids))


def test_concurrent_upserts_keep_one_record_per_identity(store):
    roster = RosterManager(store)

    def work(offset):
        for userid in range(20):
            roster.upsert_presence(STEAM_ID + offset % 4, userid=str(offset % 4 + 1), kills=userid)
            roster.snapshot()

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(work, range(16)))

    assert len(roster) == 4
    assert roster.snapshot().num_players == 4


def test_reused_userid_marks_previous_occupant_absent(store):
    roster = RosterManager(store)
    roster.upsert_presence(STEAM_ID, userid="5")

    roster.upsert_presence(OTHER_ID, userid="5")

    assert roster.get(STEAM_ID).game_info is None
    assert roster.get(OTHER_ID).game_info.userid == "5"
    assert roster.in_session() == [OTHER_ID]


def test_upsert_reports_new_entries_only(store):
    roster = RosterManager(store)

    assert roster.upsert_presence(STEAM_ID, userid="5") is True
    assert roster.upsert_presence(STEAM_ID, userid="5", ping=20) is False
    roster.mark_absent(STEAM_ID)
    assert roster.upsert_presence(STEAM_ID, userid="9") is True
    assert roster.history(STEAM_ID).sessions_seen == 2


def test_unknown_game_field_is_rejected(store):
    roster = RosterManager(store)

    with pytest.raises(TypeError):
        roster.upsert_presence(STEAM_ID, userid="5", health=100)


def test_badly_typed_game_info_is_rejected_before_merge(store):
    roster = RosterManager(store)
    roster.upsert_presence(STEAM_ID, userid="5", team=2)

    with pytest.raises(ValueError):
        roster.upsert_presence(STEAM_ID, userid="5", team="red")
    with pytest.raises(ValueError):
        roster.upsert_presence(OTHER_ID, userid="")
    with pytest.raises(ValueError):
        roster.update_presence("5", ping="fast")

    state = roster.snapshot()
    assert [player.steam_id64 for player in state.players] == [STEAM_ID]
    assert state.players[0].game_info.team == 2
    assert state.players[0].game_info.ping == 0
    assert OTHER_ID not in roster


def test_badly_typed_telemetry_is_dropped_with_warning(store, caplog):
    roster = RosterManager(store)
    _join_and_update(roster)

    with caplog.at_level(logging.WARNING):
        roster.apply_event(PlayerStateChanged(userid="5", team="red"))

    assert "Dropping state update for userid 5" in caplog.text
    assert roster.snapshot().players[0].game_info.team == 2


def test_state_change_for_unknown_userid_is_dropped(store, caplog):
    roster = RosterManager(store)

    with caplog.at_level(logging.WARNING):
        roster.apply_event(PlayerStateChanged(userid="77", ping=10))

    assert len(roster) == 0
    assert "unknown userid 77" in caplog.text


def test_apply_reputation_creates_placeholder_without_presence(store, make_steam_info):
    roster = RosterManager(store)

    record = roster.apply_reputation(STEAM_ID, make_steam_info("Pyro"))

    assert record.steam_info.name == "Pyro"
    assert record.game_info is None
    assert record.name == "Pyro"


def test_late_reputation_does_not_resurrect_presence(store, make_steam_info):
    roster = RosterManager(store)
    roster.upsert_presence(STEAM_ID, userid="5", name="Heavy")
    roster.mark_absent(STEAM_ID)

    record = roster.apply_reputation(STEAM_ID, make_steam_info())

    assert record.game_info is None
    assert record.steam_info is not None
    assert roster.needs_reputation() == []


def test_apply_verdict_on_unknown_identity_creates_placeholder(store):
    roster = RosterManager(store)

    result = roster.apply_verdict(STEAM_ID, verdict="Bot", custom_data={"note": "bot"})

    assert result.persisted is True
    assert result.record.name == str(STEAM_ID)
    assert result.record.local_verdict is Verdict.BOT
    assert result.record.custom_data == {"note": "bot"}
    assert store.get(STEAM_ID).local_verdict is Verdict.BOT


def test_apply_verdict_twice_is_idempotent(store):
    roster = RosterManager(store)

    roster.apply_verdict(STEAM_ID, verdict=Verdict.CHEATER, tags=["a", "b"])
    once = store.get(STEAM_ID)
    roster.apply_verdict(STEAM_ID, verdict=Verdict.CHEATER, tags=["a", "b"])
    twice = store.get(STEAM_ID)

    assert (once.local_verdict, once.convicted, once.tags) == (twice.local_verdict, twice.convicted, twice.tags)


def test_persistence_failure_keeps_value_in_memory(flaky_store, caplog):
    roster = RosterManager(flaky_store)
    flaky_store.fail = True

    result = roster.apply_verdict(STEAM_ID, verdict=Verdict.CHEATER)

    assert result.persisted is False
    assert isinstance(result.error, PersistenceError)
    assert result.record.local_verdict is Verdict.CHEATER
    assert roster.get(STEAM_ID).local_verdict is Verdict.CHEATER
    assert roster.pending_writes == [STEAM_ID]

    with caplog.at_level(logging.WARNING):
        assert roster.close() == [STEAM_ID]
    assert "could not be saved" in caplog.text

    flaky_store.fail = False
    assert roster.flush_pending() == []
    assert roster.pending_writes == []
    assert flaky_store.get(STEAM_ID).local_verdict is Verdict.CHEATER


def test_reset_verdict_restores_default(store):
    roster = RosterManager(store)
    roster.apply_verdict(STEAM_ID, verdict=Verdict.CHEATER, tags=["x"], convicted=True)

    result = roster.reset_verdict(STEAM_ID)

    assert result.record.local_verdict is Verdict.PLAYER
    assert result.record.tags == frozenset()
    assert result.record.convicted is False
    assert store.get(STEAM_ID).is_default()


def test_load_applies_stored_judgments_to_new_arrivals(store):
    store.save(STEAM_ID, local_verdict=Verdict.CHEATER, convicted=True, tags=["known"])
    roster = RosterManager(store)

    assert roster.load() == 1
    roster.upsert_presence(STEAM_ID, userid="3", name="Spy")

    record = roster.get(STEAM_ID)
    assert record.local_verdict is Verdict.CHEATER
    assert record.convicted is True
    assert record.tags == frozenset({"known"})


def test_name_changes_are_recorded_for_stored_identities(store):
    store.save(STEAM_ID, local_verdict=Verdict.SUSPICIOUS, convicted=False, tags=[])
    roster = RosterManager(store)
    roster.load()

    roster.upsert_presence(STEAM_ID, userid="3", name="first")
    roster.upsert_presence(STEAM_ID, userid="3", name="second")

    assert store.get(STEAM_ID).previous_names == ("first",)
    assert roster.get(STEAM_ID).name == "second"


def test_conviction_policy_is_evaluated_after_reputation(store, make_steam_info):
    calls = []

    def policy(steam_info, history, tags):
        calls.append((steam_info, history, tags))
        return steam_info is not None and steam_info.vac_bans > 0

    roster = RosterManager(store, conviction_policy=policy)
    roster.upsert_presence(STEAM_ID, userid="5")

    record = roster.apply_reputation(STEAM_ID, make_steam_info(vac_bans=2))

    assert record.convicted is True
    assert store.get(STEAM_ID).convicted is True
    assert isinstance(calls[0][1], PresenceHistory)
    assert calls[0][1].sessions_seen == 1


def test_conviction_policy_is_evaluated_after_tag_change(store):
    roster = RosterManager(store, conviction_policy=lambda info, history, tags: "cheater" in tags)

    result = roster.apply_verdict(STEAM_ID, tags=["cheater"])

    assert result.record.convicted is True


def test_without_policy_conviction_is_left_alone(store, make_steam_info):
    roster = RosterManager(store)

    roster.apply_reputation(STEAM_ID, make_steam_info(vac_bans=5))

    assert roster.get(STEAM_ID).convicted is False
    assert store.get(STEAM_ID) is None


def test_snapshot_is_point_in_time(store):
    roster = RosterManager(store, self_steam_id=OTHER_ID)
    roster.upsert_presence(STEAM_ID, userid="5", ping=10)
    roster.upsert_presence(OTHER_ID, userid="6")
    roster.apply_session_info(map="koth_viaduct", max_players=24, gamemode=Gamemode(type="King of the Hill"))

    state = roster.snapshot()
    roster.update_presence("5", ping=99)
    roster.mark_absent(OTHER_ID)

    assert state.num_players == 2
    assert state.max_players == 24
    assert state.gamemode.type == "King of the Hill"
    assert [player.steam_id64 for player in state.players] == [STEAM_ID, OTHER_ID]
    assert state.players[0].game_info.ping == 10
    assert state.players[1].is_self is True
    assert roster.snapshot().players[-1].steam_id64 == STEAM_ID


def test_session_info_event_updates_only_observed_fields(store):
    roster = RosterManager(store)
    roster.apply_event(SessionInfoChanged(hostname="Server", ip="1.2.3.4:27015"))

    roster.apply_event(SessionInfoChanged(max_players=32))

    state = roster.snapshot()
    assert state.hostname == "Server"
    assert state.ip == "1.2.3.4:27015"
    assert state.max_players == 32
