"""Tests for settings loading and the reference data loaders."""
from pathlib import Path

import pytest

from config.settings import load_settings
from database.reference import customer_from_raw, entry_from_raw, load_catalog, load_customers

DATA = Path(__file__).parent.parent / "data"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    monkeypatch.setattr("config.settings._settings", None)


class TestSettings:
    def test_env_substitution_and_section_merge(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TECH_MAIL", "tech@site.test")
        path = tmp_path / "settings.yaml"
        path.write_text(
            "conversation:\n"
            "  grace_period_s: 30\n"
            "  min_text_length:\n"
            "    problem_description: 15\n"
            "mail:\n"
            "  technician_address: ${TECH_MAIL}\n"
            "  office_address: ${UNSET_VAR_FOR_TEST}\n"
            "channels:\n"
            "  whatsapp:\n"
            "    enabled: true\n"
            "    credentials:\n"
            "      instance_id: '1101'\n",
            encoding="utf-8",
        )
        settings = load_settings(str(path))

        assert settings.conversation.grace_period_s == 30
        assert settings.conversation.min_text_length["problem_description"] == 15
        assert settings.conversation.min_text_length["training_request"] == 8
        assert settings.mail.technician_address == "tech@site.test"
        assert settings.mail.office_address == "${UNSET_VAR_FOR_TEST}"
        assert settings.channels["whatsapp"].enabled
        assert settings.channels["whatsapp"].credentials["instance_id"] == "1101"

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings.conversation.grace_period_s == 60
        assert settings.tickets.prefix == "HSC-"
        assert settings.channels == {}

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("tickets:\n  floor: 50000\n  colour: blue\n", encoding="utf-8")
        settings = load_settings(str(path))
        assert settings.tickets.floor == 50000
        assert not hasattr(settings.tickets, "colour")


class TestReferenceData:
    def test_load_customers_mixed_headers(self):
        customers = load_customers(str(DATA / "clients.json"))
        assert [c.id for c in customers] == ["555", "612", "718"]
        avi = customers[2]
        assert avi.site == "Soroka Medical Center Beer Sheva"
        assert avi.phones == ["050-1112233", "08-6400111"]
        assert avi.email == ""

    def test_phone_columns_capped(self):
        customer = customer_from_raw({
            "id": 1, "name": "Many", "phones": ["1", "2", "3"], "phone4": "4", "phone5": "5; 6",
        })
        assert customer.phones == ["1", "2", "3", "4", "5"]

    def test_load_catalog_both_shapes(self):
        catalog = load_catalog(str(DATA / "scenarios.json"))
        labels = [e.label for e in catalog]
        assert "Barrier gate stuck" in labels
        legacy = next(e for e in catalog if e.label == "Entry station - Ticket printer jam")
        assert legacy.steps[0] == "Open the printer cover with the service key."
        assert "• Use only original ticket rolls." in legacy.notes

    def test_legacy_entry_without_warnings(self):
        entry = entry_from_raw({"problem": "Gate loop", "solution": ["Reset"], "diagnosis": ""})
        assert entry.label == "Gate loop"
        assert entry.notes == ""

    def test_missing_or_broken_files(self, tmp_path):
        assert load_customers(str(tmp_path / "none.json")) == []
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        assert load_catalog(str(broken)) == []
