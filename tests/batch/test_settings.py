"""Tests for fortune_batch.services.settings (the stored refresh time)."""

from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from fortune_kernel.exceptions import InvalidScheduleTimeError

from fortune_batch.services.settings import FORTUNE_UPDATE_TIME_KEY, SettingsStore


@pytest.fixture
def settings_store(session_factory):
    return SettingsStore(session_factory)


class TestSettingsStore:
    def test_get_missing(self, settings_store):
        assert settings_store.get("nothing") is None

    def test_set_then_update(self, settings_store):
        settings_store.set("greeting", "hello", updated_by="admin", description="Test value")
        settings_store.set("greeting", "bye", updated_by="ops")
        assert settings_store.get("greeting") == "bye"

    def test_description_kept_on_update(self, settings_store, session_factory):
        from fortune_batch.models.settings import SystemSettingModel

        settings_store.set("greeting", "hello", description="Test value")
        settings_store.set("greeting", "bye", updated_by="ops")
        with session_factory() as session:
            row = session.query(SystemSettingModel).filter_by(key="greeting").one()
            assert row.description == "Test value"
            assert row.updated_by == "ops"


class TestFortuneUpdateTime:
    def test_default_when_unset(self, settings_store):
        assert settings_store.get_fortune_update_time() == "03:00"

    def test_set_valid(self, settings_store):
        assert settings_store.set_fortune_update_time("04:30", updated_by="admin") == "04:30"
        assert settings_store.get(FORTUNE_UPDATE_TIME_KEY) == "04:30"
        assert settings_store.resolve_fortune_update_time() == "04:30"

    @pytest.mark.parametrize("value", ["24:00", "4:30", "04-30", ""])
    def test_set_invalid_rejected(self, settings_store, value):
        with pytest.raises(InvalidScheduleTimeError):
            settings_store.set_fortune_update_time(value)
        assert settings_store.get(FORTUNE_UPDATE_TIME_KEY) is None

    def test_resolve_missing(self, settings_store, captured_logs):
        assert settings_store.resolve_fortune_update_time() == "03:00"
        assert any(r["message"] == "fortune_update_time_missing" for r in captured_logs())

    def test_resolve_invalid_stored_value(self, settings_store, captured_logs):
        settings_store.set(FORTUNE_UPDATE_TIME_KEY, "99:99")
        assert settings_store.resolve_fortune_update_time() == "03:00"
        invalid = [r for r in captured_logs() if r["message"] == "fortune_update_time_invalid"]
        assert invalid[0]["value"] == "99:99"

    def test_resolve_unreadable(self, settings_store, captured_logs):
        with patch.object(
            SettingsStore, "get", side_effect=OperationalError("SELECT", {}, Exception("db gone")),
        ):
            assert settings_store.resolve_fortune_update_time() == "03:00"
        assert any(r["message"] == "fortune_update_time_unreadable" for r in captured_logs())
