import json

import pytest

from nfe_reconciler.core.preferences import MappingPreferences


def test_mapping_preferences_roundtrip(tmp_path):
    path = tmp_path / "mapeamentos.json"
    preferences = MappingPreferences(path)
    preferences.save(1, "AB-001", "ÁCIDO SULFÚRICO 98%", 42)

    assert preferences.lookup(1, "ab001") == 42
    assert preferences.lookup(1, "AB 001") == 42
    assert preferences.lookup(2, "AB-001") is None

    reloaded = MappingPreferences(path)
    assert reloaded.lookup(1, "AB-001") == 42
    assert reloaded.mappings(1)[0]["description"] == "ÁCIDO SULFÚRICO 98%"


def test_mapping_preferences_keep_history(tmp_path):
    path = tmp_path / "mapeamentos.json"
    preferences = MappingPreferences(path)
    preferences.save(1, "AB-001", "Produto", 1)
    preferences.save(1, "AB-001", "Produto", 2, manual=False)

    assert preferences.lookup(1, "AB-001") == 2
    payload = json.loads(path.read_text(encoding="utf-8"))
    decisions = payload["history"]["decisions"]
    assert [entry["variant_id"] for entry in decisions] == [1, 2]
    assert decisions[1]["manual"] is False
    assert decisions[0]["updated_at"].endswith("+00:00")


def test_mapping_without_code_is_ignored():
    preferences = MappingPreferences()
    preferences.save(1, "", "Produto sem código", 1)
    assert preferences.mappings(1) == []
    assert preferences.lookup(1, None) is None


def test_mapping_write_failures_propagate(tmp_path):
    blocker = tmp_path / "bloqueado"
    blocker.write_text("", encoding="utf-8")
    preferences = MappingPreferences(blocker / "mapeamentos.json")

    with pytest.raises(OSError):
        preferences.save(1, "AB-001", "Produto", 1)
