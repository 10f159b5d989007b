import json
from datetime import datetime, timezone

import pytest

from scoreboard_bot.core.errors import ConfigurationError
from scoreboard_bot.core.utils.week import current_week_info, week_info_for
from scoreboard_bot.integrations.system_config import ServerConfigRegistry, build_guild_config, require_keys


def test_guild_overrides_merge_over_defaults():
    config = build_guild_config(1, {"target_roles": {"clan1": "55"}, "ocr": {"preprocessing": {"gamma": 2.2}}})

    assert config.clan_role("clan1") == 55
    assert config.clan_label("clan1") == "clan1"
    assert config.ocr.preprocessing.gamma == 2.2
    assert config.ocr.preprocessing.contrast == 2.5
    assert config.match_threshold == 0.7
    assert config.auto_resolve_majority is False
    with pytest.raises(ConfigurationError):
        config.clan_role("unknown")


def test_invalid_values_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        build_guild_config(1, {"session_timeout_seconds": "soon"})


def test_registry_loads_servers_json(tmp_path):
    path = tmp_path / "servers.json"
    path.write_text(
        json.dumps({"_comment": "ignored", "1": {"target_roles": {"a": 1}}, "2": {"enabled": False}}),
        encoding="utf-8",
    )

    registry = ServerConfigRegistry.load(path)

    assert registry.guild_ids() == [1]
    with pytest.raises(ConfigurationError):
        registry.get(2)


def test_missing_servers_json_gives_empty_registry(tmp_path):
    assert len(ServerConfigRegistry.load(tmp_path / "absent.json")) == 0


def test_require_keys():
    require_keys(["A"], source={"A": "x"})
    with pytest.raises(ConfigurationError):
        require_keys(["A", "B"], source={"A": "x"})


@pytest.mark.parametrize(
    "moment, expected",
    [
        (datetime(2020, 12, 31, 12, tzinfo=timezone.utc), (2020, 53)),
        (datetime(2021, 1, 3, 12, tzinfo=timezone.utc), (2020, 53)),
        (datetime(2021, 1, 4, 12, tzinfo=timezone.utc), (2021, 1)),
        (datetime(2024, 12, 30, 12, tzinfo=timezone.utc), (2025, 1)),
    ],
)
def test_iso_week_boundaries(moment, expected):
    info = week_info_for(moment)

    assert (info.year, info.week) == expected


def test_week_uses_civil_timezone():
    # Sunday 23:30 UTC is already Monday in Warsaw
    moment = datetime(2021, 1, 3, 23, 30, tzinfo=timezone.utc)

    assert current_week_info("UTC", moment).week == 53
    assert current_week_info("Europe/Warsaw", moment).week == 1
