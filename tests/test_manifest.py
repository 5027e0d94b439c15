"""
Tests for manifest loading.
"""

import json

import pytest

from switchboard.core.exceptions import ValidationError
from switchboard.core.manifest import DEFAULT_MANIFEST, load_manifest


def test_builtin_manifest_is_a_copy():
    manifest = load_manifest()
    manifest[0]["rollout_percentage"] = 99

    assert [entry["key"] for entry in manifest] == [entry["key"] for entry in DEFAULT_MANIFEST]
    assert DEFAULT_MANIFEST[0]["rollout_percentage"] == 25


def test_list_file(tmp_path):
    path = tmp_path / "flags.json"
    path.write_text(json.dumps([{"key": "a"}, {"key": "b"}]), encoding="utf-8")

    assert load_manifest(path) == [{"key": "a"}, {"key": "b"}]


def test_wrapped_file(tmp_path):
    path = tmp_path / "flags.json"
    path.write_text(json.dumps({"flags": [{"key": "a"}]}), encoding="utf-8")

    assert load_manifest(str(path)) == [{"key": "a"}]


def test_unreadable_file(tmp_path):
    with pytest.raises(ValidationError) as exc_info:
        load_manifest(tmp_path / "missing.json")
    assert exc_info.value.error_code == "MANIFEST_UNREADABLE"


def test_malformed_json(tmp_path):
    path = tmp_path / "flags.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValidationError) as exc_info:
        load_manifest(path)
    assert exc_info.value.error_code == "MANIFEST_UNREADABLE"


@pytest.mark.parametrize("payload", [{"flags": "nope"}, {"other": []}, "flags"])
def test_wrong_shape(tmp_path, payload):
    path = tmp_path / "flags.json"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ValidationError) as exc_info:
        load_manifest(path)
    assert exc_info.value.error_code == "MANIFEST_INVALID"
