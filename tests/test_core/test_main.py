"""
Tests for process entry point helpers.
"""

import os

from ghostwatch.main import load_environment


def test_local_env_overrides_base(tmp_path, monkeypatch):
    monkeypatch.delenv("GW_TEST_VALUE", raising=False)
    monkeypatch.delenv("GW_TEST_ONLY_BASE", raising=False)
    (tmp_path / ".env").write_text("GW_TEST_VALUE=base\nGW_TEST_ONLY_BASE=yes\n")
    (tmp_path / ".env.local").write_text("GW_TEST_VALUE=local\n")

    load_environment(tmp_path)

    assert os.environ["GW_TEST_VALUE"] == "local"
    assert os.environ["GW_TEST_ONLY_BASE"] == "yes"
    monkeypatch.delenv("GW_TEST_VALUE")
    monkeypatch.delenv("GW_TEST_ONLY_BASE")


def test_missing_files_are_fine(tmp_path):
    load_environment(tmp_path)
