from pathlib import Path

import pytest

from pymac.models import ProfileVisibility, SteamInfo
from pymac.persistence import VerdictStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_steam_info():
    def _make(name: str = "Heavy", *, vac_bans: int = 0) -> SteamInfo:
        return SteamInfo(
            name=name,
            profileUrl=f"https://steamcommunity.com/id/{name.lower()}/",
            pfp="https://avatars.example/full.jpg",
            pfpHash="abc123",
            profileVisibility=ProfileVisibility.PUBLIC,
            vacBans=vac_bans,
            gameBans=0,
            daysSinceLastBan=10 if vac_bans else None,
        )

    return _make


@pytest.fixture
def store(tmp_path: Path, monkeypatch) -> VerdictStore:
    monkeypatch.delenv("PYMAC_DB_PATH", raising=False)
    return VerdictStore(tmp_path / "verdicts.sqlite")
